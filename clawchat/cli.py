"""
ClawChat command line.

    clawchat serve              run the public and the agent servers
    clawchat invite             mint a single-use device invite link
    clawchat send "hello"       post an agent message through the agent API
    clawchat config [KEY=VALUE] show or update data/config.json
"""
import argparse
import asyncio
import json
import sys

import httpx
import uvicorn

from clawchat.config import (
    HOST, PORT, AGENT_HOST, AGENT_PORT, BASE_URL, INVITE_TTL_MINUTES,
    get_config_dict, save_config_dict,
)
from clawchat.web import configure_logging, install_disconnect_filter


async def _serve(args) -> None:
    from clawchat.agent_api import create_agent_app
    from clawchat.main import create_app
    from clawchat.services import ChatServices

    services = ChatServices()
    public_app = create_app(services=services, auth_enabled=not args.no_auth)
    agent_app = create_agent_app(services)

    servers = [
        uvicorn.Server(uvicorn.Config(public_app, host=args.host, port=args.port,
                                      log_level="info", timeout_graceful_shutdown=3)),
        uvicorn.Server(uvicorn.Config(agent_app, host=args.agent_host, port=args.agent_port,
                                      log_level="info", timeout_graceful_shutdown=3)),
    ]
    await asyncio.gather(*(s.serve() for s in servers))


async def _invite(args) -> None:
    from clawchat.db import crud
    from clawchat.db.database import close_db, get_db

    db = await get_db()
    try:
        invite = await crud.invite_create(db, ttl_minutes=args.ttl)
    finally:
        await close_db()
    print(f"{BASE_URL}/invite?token={invite.token}")
    print(f"Expires: {invite.expires_at.isoformat()}")


async def _send(args) -> int:
    body = {"content": args.text}
    if args.conversation:
        body["conversationId"] = args.conversation
    async with httpx.AsyncClient(base_url=args.agent_api, timeout=10) as client:
        try:
            r = await client.post("/send", json=body)
        except httpx.HTTPError as e:
            print(f"Agent API unreachable at {args.agent_api}: {e}", file=sys.stderr)
            return 1
    if r.status_code != 200:
        print(f"Send failed: {r.status_code} {r.text}", file=sys.stderr)
        return 1
    print(r.json()["messageId"])
    return 0


def _config(args) -> None:
    if args.assignments:
        updates = {}
        for item in args.assignments:
            key, sep, value = item.partition("=")
            if not sep:
                raise SystemExit(f"Expected KEY=VALUE, got '{item}'")
            updates[key.strip().upper()] = value
        save_config_dict(updates)
        print("Saved. Restart the server to apply.")
        return
    print(json.dumps(get_config_dict(), indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="clawchat", description="Self-hosted chat with a single agent")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the public and agent HTTP servers")
    serve.add_argument("--host", default=HOST, help="Public bind host")
    serve.add_argument("--port", type=int, default=PORT, help="Public bind port")
    serve.add_argument("--agent-host", default=AGENT_HOST, help="Agent API bind host")
    serve.add_argument("--agent-port", type=int, default=AGENT_PORT, help="Agent API bind port")
    serve.add_argument("--no-auth", action="store_true", help="Disable the session cookie gate")

    invite = sub.add_parser("invite", help="Create a single-use invite link")
    invite.add_argument("--ttl", type=int, default=INVITE_TTL_MINUTES, help="Validity in minutes")

    send = sub.add_parser("send", help="Post an agent message")
    send.add_argument("text")
    send.add_argument("--conversation", default=None)
    send.add_argument("--agent-api", default=f"http://{AGENT_HOST}:{AGENT_PORT}")

    config = sub.add_parser("config", help="Show or update persisted settings")
    config.add_argument("assignments", nargs="*", metavar="KEY=VALUE")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "serve":
        configure_logging()
        install_disconnect_filter()
        asyncio.run(_serve(args))
    elif args.command == "invite":
        asyncio.run(_invite(args))
    elif args.command == "send":
        return asyncio.run(_send(args))
    elif args.command == "config":
        _config(args)
    return 0


if __name__ == "__main__":
    sys.exit(main())
