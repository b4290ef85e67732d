"""Command line entry point: run the controller or talk to a running one"""

import argparse
import json
import sys
from typing import Any, Dict, List, Optional

import httpx

from . import __version__, crd
from .config import Config
from .errors import ConfigError
from .log import configure_logging, get_logger
from .models import split_key

logger = get_logger("cli")

REQUEST_TIMEOUT = 10.0


class ManagementClient:
    """Thin client of a running controller's Management API"""

    def __init__(self, address: str, timeout: float = REQUEST_TIMEOUT, transport: Optional[httpx.BaseTransport] = None):
        self.http = httpx.Client(base_url=f"http://{address}", timeout=timeout, transport=transport)

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        response = self.http.request(method, path, json=body)
        response.raise_for_status()
        return response.json()

    def list(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/databases")

    def get(self, key: str) -> Dict[str, Any]:
        namespace, name = split_key(key)
        return self._request("GET", f"/databases/{namespace}/{name}")

    def reconcile(self, key: str) -> Dict[str, Any]:
        namespace, name = split_key(key)
        return self._request("POST", f"/databases/{namespace}/{name}/reconcile")

    def rotate(self, key: str) -> Dict[str, Any]:
        namespace, name = split_key(key)
        return self._request("POST", f"/databases/{namespace}/{name}/rotate-credential")

    def operator_state(self) -> Dict[str, Any]:
        return self._request("GET", "/operator/state")

    def change_operator_state(self, desired: str) -> Dict[str, Any]:
        return self._request("POST", "/operator/state", {"desired": desired})

    def close(self):
        self.http.close()


def format_table(snapshots: List[Dict[str, Any]]) -> str:
    rows = [("ID", "PHASE", "ROLE", "DATABASE", "GENERATION")]
    for item in snapshots:
        status = item.get("status") or {}
        rows.append((
            item["id"],
            status.get("phase") or "-",
            status.get("roleName") or "-",
            status.get("databaseName") or "-",
            str(item.get("generation", "-")),
        ))
    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    return "\n".join("  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip() for row in rows)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="postgres-controller",
        description="Manage PostgreSQL roles and databases from ManagedDatabase resources",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  postgres-controller run --config controller.yaml   Start the controller
  postgres-controller list                           Show every known ManagedDatabase
  postgres-controller reconcile shop/orders          Force a reconcile pass
  postgres-controller rotate shop/orders             Rotate the credential
  postgres-controller operator disable               Pause reconciling without stopping
  postgres-controller crd | kubectl apply -f -       Install the CRD
        """
    )
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    parser.add_argument(
        '--config', '-c',
        help='YAML configuration file (environment variables take precedence)'
    )
    parser.add_argument(
        '--log-level', '-l',
        help='Minimum log level (default: LOG_LEVEL or INFO)'
    )
    parser.add_argument(
        '--address', '-a',
        help='Management API address (default: MANAGEMENT_ADDRESS or 127.0.0.1:8032)'
    )

    commands = parser.add_subparsers(dest='command', required=True)
    commands.add_parser('run', help='Launch the controller')
    commands.add_parser('list', help='List ManagedDatabases known to a running controller')
    for name, help_text in (('get', 'Show the status of one ManagedDatabase'),
                            ('reconcile', 'Queue a forced reconcile pass'),
                            ('rotate', 'Rotate the credential of a ManagedDatabase')):
        command = commands.add_parser(name, help=help_text)
        command.add_argument('key', metavar='NAMESPACE/NAME')
    operator = commands.add_parser('operator', help='Enable, disable or check the operator of a running controller')
    operator.add_argument('action', choices=('enable', 'disable', 'status'))
    commands.add_parser('crd', help='Print the ManagedDatabase CRD as YAML')
    return parser


def load_config(args: argparse.Namespace) -> Config:
    config = Config.load(args.config)
    if args.log_level:
        config.LOG_LEVEL = args.log_level.upper()
    if args.address:
        config.MANAGEMENT_ADDRESS = args.address
    config.validate()
    return config


def run_operator_command(client: ManagementClient, action: str) -> int:
    if action == 'status':
        running = client.operator_state()["running"]
        print(f"Operator is {'running' if running else 'stopped'}")
        return 0
    desired = "enabled" if action == 'enable' else "disabled"
    if client.change_operator_state(desired)["success"]:
        print(f"Operator {desired}")
        return 0
    print("error: failed to enable operator, check the controller logs", file=sys.stderr)
    return 1


def run_client(args: argparse.Namespace, config: Config) -> int:
    client = ManagementClient(config.MANAGEMENT_ADDRESS)
    try:
        if args.command == 'list':
            print(format_table(client.list()))
        elif args.command == 'get':
            print(json.dumps(client.get(args.key), indent=2))
        elif args.command == 'reconcile':
            client.reconcile(args.key)
            print(f"Reconcile of {args.key} queued")
        elif args.command == 'rotate':
            client.rotate(args.key)
            print(f"Credential rotation for {args.key} queued")
        elif args.command == 'operator':
            return run_operator_command(client, args.action)
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    except httpx.HTTPStatusError as e:
        try:
            message = e.response.json().get("message", e.response.text)
        except ValueError:
            message = e.response.text
        print(f"error: {e.response.status_code} {message}", file=sys.stderr)
        return 1
    except httpx.HTTPError as e:
        print(f"error: unable to reach controller at {config.MANAGEMENT_ADDRESS}: {e}", file=sys.stderr)
        return 1
    finally:
        client.close()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)

    if args.command == 'crd':
        print(crd.to_yaml(), end="")
        return 0

    try:
        config = load_config(args)
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    configure_logging(config.LOG_LEVEL)

    if args.command != 'run':
        return run_client(args, config)

    from .runtime import PostgresController

    try:
        controller = PostgresController(config)
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        return 1
    return controller.run()


if __name__ == '__main__':
    sys.exit(main())
