import argparse

from xlai.cli import build_parser, cmd_serve


def test_cmd_serve_invokes_uvicorn(monkeypatch):
    called = {}

    def fake_run(app, host, port, reload):  # pragma: no cover
        called.update({"app": app, "host": host, "port": port, "reload": reload})

    monkeypatch.setattr("xlai.cli.uvicorn.run", fake_run)

    args = argparse.Namespace(app="xlai.agents.http_api:app", host="127.0.0.1", port=9000, reload=True)
    cmd_serve(args, {})

    assert called == {
        "app": "xlai.agents.http_api:app",
        "host": "127.0.0.1",
        "port": 9000,
        "reload": True,
    }


def test_serve_defaults_to_port_3000(monkeypatch):
    monkeypatch.delenv("PORT", raising=False)
    args = build_parser().parse_args(["serve"])
    assert args.port == 3000
    assert args.app == "xlai.agents.http_api:app"
