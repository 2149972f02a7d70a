"""Command line entry points that need no AWS access."""

import json

from websocket_infra import cli


def test_render_bootstrap(capsys):
    assert cli.main(["render-bootstrap", "-e", "prod"]) == 0
    out = capsys.readouterr().out
    assert out.startswith("#!/bin/bash\n")
    assert "Environment=ASPNETCORE_ENVIRONMENT=Production" in out


def test_describe(capsys):
    assert cli.main(["describe"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["environment"] == "dev"
    assert [r["logical_id"] for r in payload["resources"]][0] == "EC2Role"


def test_unknown_environment_exits_with_error(capsys):
    assert cli.main(["describe", "--environment", "qa"]) == 1
    assert "Unknown environment" in capsys.readouterr().err
