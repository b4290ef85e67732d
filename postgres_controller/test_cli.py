"""Command line parsing and the Management API client"""

import json
from unittest.mock import patch

import httpx
import pytest

from . import cli, crd
from .cli import ManagementClient, build_parser, format_table, main, run_client
from .config import Config

SNAPSHOT = {
    "id": "shop/orders", "namespace": "shop", "name": "orders", "generation": 3,
    "deleting": False, "spec": {},
    "status": {"phase": "Ready", "roleName": "app-role", "databaseName": "app-db"},
}


def management_api(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if request.method == "GET" and path == "/databases":
        return httpx.Response(200, json=[SNAPSHOT])
    if request.method == "GET" and path == "/databases/shop/orders":
        return httpx.Response(200, json=SNAPSHOT)
    if request.method == "POST" and path == "/databases/shop/orders/reconcile":
        return httpx.Response(202, json={"id": "shop/orders", "queued": True})
    if request.method == "POST" and path == "/databases/shop/orders/rotate-credential":
        return httpx.Response(409, json={"code": 409, "message": "a reconcile pass for shop/orders is in flight"})
    if request.method == "GET" and path == "/operator/state":
        return httpx.Response(200, json={"running": False})
    if request.method == "POST" and path == "/operator/state":
        # No kubeconfig on this controller: enabling fails, disabling always succeeds
        return httpx.Response(200, json={"success": json.loads(request.content)["desired"] == "disabled"})
    return httpx.Response(404, json={"code": 404, "message": "ManagedDatabase not found"})


def mock_client(*args, **kwargs):
    return ManagementClient("127.0.0.1:8032", transport=httpx.MockTransport(management_api))


def test_parser():
    print("🧪 Testing argument parsing...")
    parser = build_parser()

    args = parser.parse_args(["--config", "controller.yaml", "run"])
    assert args.command == "run"
    assert args.config == "controller.yaml"

    args = parser.parse_args(["-a", "10.0.0.1:9000", "rotate", "shop/orders"])
    assert args.command == "rotate"
    assert args.key == "shop/orders"
    assert args.address == "10.0.0.1:9000"

    with pytest.raises(SystemExit):
        parser.parse_args([])
    print("✅ Parser tests passed!")


def test_crd_command_prints_manifest(capsys):
    assert main(["crd"]) == 0
    output = capsys.readouterr().out
    assert "kind: CustomResourceDefinition" in output
    assert "name: manageddatabases.postgres-controller.io" in output


def test_management_client():
    client = mock_client()
    try:
        assert client.list()[0]["id"] == "shop/orders"
        assert client.get("shop/orders")["status"]["phase"] == "Ready"
        assert client.reconcile("shop/orders")["queued"]
        with pytest.raises(httpx.HTTPStatusError):
            client.rotate("shop/orders")
        with pytest.raises(ValueError):
            client.get("orders")
    finally:
        client.close()


def test_format_table():
    table = format_table([SNAPSHOT])
    header, row = table.splitlines()
    assert header.split() == ["ID", "PHASE", "ROLE", "DATABASE", "GENERATION"]
    assert row.split() == ["shop/orders", "Ready", "app-role", "app-db", "3"]


@pytest.mark.parametrize("argv,code", [
    (["list"], 0),
    (["get", "shop/orders"], 0),
    (["reconcile", "shop/orders"], 0),
    (["rotate", "shop/orders"], 1),
    (["get", "orders"], 2),
    (["operator", "status"], 0),
    (["operator", "disable"], 0),
    (["operator", "enable"], 1),
])
def test_client_commands_exit_codes(argv, code):
    args = build_parser().parse_args(argv)
    with patch.object(cli, "ManagementClient", side_effect=mock_client):
        assert run_client(args, Config.load(environ={})) == code


def test_conflict_message_is_reported(capsys):
    args = build_parser().parse_args(["rotate", "shop/orders"])
    with patch.object(cli, "ManagementClient", side_effect=mock_client):
        run_client(args, Config.load(environ={}))
    assert "409 a reconcile pass for shop/orders is in flight" in capsys.readouterr().err


def test_get_prints_json(capsys):
    args = build_parser().parse_args(["get", "shop/orders"])
    with patch.object(cli, "ManagementClient", side_effect=mock_client):
        run_client(args, Config.load(environ={}))
    assert json.loads(capsys.readouterr().out)["id"] == "shop/orders"


def test_unreachable_controller():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    def unreachable(*args, **kwargs):
        return ManagementClient("127.0.0.1:8032", transport=httpx.MockTransport(refuse))

    args = build_parser().parse_args(["list"])
    with patch.object(cli, "ManagementClient", side_effect=unreachable):
        assert run_client(args, Config.load(environ={})) == 1


def test_invalid_configuration_exits_with_usage_error(monkeypatch, capsys):
    monkeypatch.setenv("WORKERS", "0")
    assert main(["list"]) == 2
    assert "WORKERS" in capsys.readouterr().err


def test_operator_commands(capsys):
    print("🧪 Testing operator commands...")
    client = mock_client()
    try:
        assert client.operator_state() == {"running": False}
        assert client.change_operator_state("disabled") == {"success": True}
    finally:
        client.close()

    for argv in (["operator", "status"], ["operator", "enable"]):
        with patch.object(cli, "ManagementClient", side_effect=mock_client):
            run_client(build_parser().parse_args(argv), Config.load(environ={}))
    captured = capsys.readouterr()
    assert "Operator is stopped" in captured.out
    assert "failed to enable operator" in captured.err

    with pytest.raises(SystemExit):
        build_parser().parse_args(["operator", "restart"])
    print("✅ Operator command tests passed!")


def test_crd_password_source_is_one_of_value_or_secret():
    spec_schema = crd.manifest()["spec"]["versions"][0]["schema"]["openAPIV3Schema"]["properties"]["spec"]
    password = spec_schema["properties"]["password"]

    assert set(password["properties"]) == {"value", "fromSecret"}
    assert password["oneOf"] == [{"required": ["value"]}, {"required": ["fromSecret"]}]
    assert password["properties"]["fromSecret"]["required"] == ["name", "key"]
