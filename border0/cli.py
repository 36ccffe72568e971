import argparse
import functools
import json
import logging
import sys
from http.server import SimpleHTTPRequestHandler

from . import listen, new_api_client
from .errors import Border0Error
from .listen.relay import split_host_port
from .serve import ListenerServer, proxy_handler


def _listener_options(args):
    options = {
        "socket_name": args.socket_name,
        "socket_type": args.socket_type,
        "policy_names": args.policy or (),
        "insecure_transport": args.insecure,
    }
    if args.token:
        options["auth_token"] = args.token
    if args.control_endpoint:
        options["control_endpoint"] = args.control_endpoint
    if args.api_url:
        options["api_base_url"] = args.api_url
    return options


def _serve(args, handler_class):
    listener = listen(**_listener_options(args))
    print(f"Listening on {listener.addr()}")
    with ListenerServer(listener, handler_class) as server:
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            print("\nShutting down")
    return 0


def serve_files(args):
    handler = functools.partial(SimpleHTTPRequestHandler, directory=args.directory)
    return _serve(args, handler)


def serve_proxy(args):
    try:
        host, port = split_host_port(args.upstream)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    print(f"Forwarding to {host}:{port}")
    return _serve(args, proxy_handler(host, port))


def list_sockets(args):
    with new_api_client(args.token, base_url=args.api_url) as api:
        sockets = api.sockets()
    if args.json:
        print(json.dumps([s.to_dict() for s in sockets], indent=2))
        return 0
    if not sockets:
        print("No sockets found")
        return 0
    for s in sockets:
        policies = ", ".join(p.name for p in s.policies) or "-"
        print(f"{s.name:<32} {s.socket_type:<10} {s.socket_id}  policies: {policies}")
    return 0


def whoami(args):
    with new_api_client(args.token, base_url=args.api_url) as api:
        try:
            claims = api.token_claims()
        except ValueError as e:
            print(f"Error: invalid token: {e}", file=sys.stderr)
            return 1
    print(json.dumps(claims, indent=2, sort_keys=True))
    return 0


def build_parser():
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--token", type=str, help="Auth token (default: $BORDER0_AUTH_TOKEN)")
    common.add_argument("--api-url", type=str, help="Management API base URL")
    common.add_argument("--log-level", type=str, default="INFO", help="Logging level")

    listener_args = argparse.ArgumentParser(add_help=False)
    listener_args.add_argument("--socket-name", type=str, help="Socket name (default: $BORDER0_SOCKET_NAME)")
    listener_args.add_argument("--socket-type", type=str, default="http", help="Socket type")
    listener_args.add_argument("--policy", action="append", help="Policy to attach (repeatable)")
    listener_args.add_argument("--control-endpoint", type=str, help="Control plane host:port")
    listener_args.add_argument("--insecure", action="store_true", help="Disable TLS (testing only)")

    parser = argparse.ArgumentParser(description="Border0 CLI")
    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser(
        "serve", parents=[common, listener_args], help="Serve a directory over HTTP through a socket"
    )
    serve_parser.add_argument("--directory", type=str, default=".", help="Directory to serve")

    proxy_parser = subparsers.add_parser(
        "proxy", parents=[common, listener_args], help="Forward socket traffic to a local upstream"
    )
    proxy_parser.add_argument("--upstream", type=str, required=True, help="Upstream host:port")

    sockets_parser = subparsers.add_parser("sockets", parents=[common], help="List sockets")
    sockets_parser.add_argument("--json", action="store_true", help="Print JSON")

    subparsers.add_parser("whoami", parents=[common], help="Show the claims of the auth token")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "serve": serve_files,
        "proxy": serve_proxy,
        "sockets": list_sockets,
        "whoami": whoami,
    }
    try:
        return commands[args.command](args)
    except Border0Error as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
