"""Command line entry point: ``python -m chainsignal``."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import sys
from typing import List, Optional

from . import config
from .config import SessionConfig
from .identity import Identity
from .relay.memory import InMemoryLedger
from .session import SignalSession


def cmd_keygen(args: argparse.Namespace) -> int:
    password = args.password if args.password is not None else getpass.getpass("Password: ")
    identity, account_key = Identity.generate(args.address)
    identity.save_to_file(args.out, password)
    print(f"address:    {identity.address}")
    print(f"public key: {identity.public_key_hex}")
    if account_key is not None:
        print(f"account key (keep it secret, it is not stored in {args.out}): {account_key}")
    return 0


def cmd_serve_relay(args: argparse.Namespace) -> int:
    from .relay import server

    server.main(host=args.host, port=args.port)
    return 0


async def simulate(timeout_s: float, latency_s: float) -> str:
    """Negotiate a channel between two local identities and exchange a greeting.

    Returns the greeting Alice received back.
    """

    ledger = InMemoryLedger(latency_s=latency_s)
    alice, _ = Identity.generate()
    bob, _ = Identity.generate()
    session_config = SessionConfig(timeout_s=timeout_s)
    alice_session = SignalSession(
        alice, ledger.connect(alice.address), {bob.address: bob.public_key_hex}, config=session_config
    )
    bob_session = SignalSession(
        bob, ledger.connect(bob.address), {alice.address: alice.public_key_hex}, config=session_config
    )

    @bob_session.on_request
    async def on_request(request):
        print(f"bob: request from {request.sender}, accepting")
        await request.accept()

    @bob_session.on_channel
    def on_channel(channel):
        channel.on_message(lambda message: channel.respond(f"hello {message}"))

    loop = asyncio.get_running_loop()
    reply: asyncio.Future = loop.create_future()
    try:
        channel = await alice_session.initiate(bob.address)
        print(f"alice: channel open to {channel.remote_address}")
        channel.on_message(lambda message: reply.done() or reply.set_result(message))
        channel.respond("alice")
        greeting = await asyncio.wait_for(reply, timeout_s)
        print(f"alice: got {greeting!r}")
        await channel.close()
        return greeting
    finally:
        await alice_session.close()
        await bob_session.close()


def cmd_simulate(args: argparse.Namespace) -> int:
    asyncio.run(simulate(args.timeout, args.latency))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chainsignal",
        description="Negotiate encrypted peer-to-peer data channels over a public ledger relay.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    keygen = sub.add_parser("keygen", help="Create and save a new identity.")
    keygen.add_argument("--out", required=True, help="Path of the identity file to write.")
    keygen.add_argument("--address", help="Existing ledger account address to bind to.")
    keygen.add_argument("--password", help="Identity file password (prompted when omitted).")
    keygen.set_defaults(func=cmd_keygen)

    serve = sub.add_parser("serve-relay", help="Run the development relay server.")
    serve.add_argument("--host", default=config.RELAY_HOST)
    serve.add_argument("--port", type=int, default=config.RELAY_PORT)
    serve.set_defaults(func=cmd_serve_relay)

    sim = sub.add_parser("simulate", help="Run an in-process Alice/Bob negotiation.")
    sim.add_argument("--timeout", type=float, default=config.SIGNAL_TIMEOUT_S)
    sim.add_argument("--latency", type=float, default=0.0, help="Relay acceptance latency in seconds.")
    sim.set_defaults(func=cmd_simulate)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return args.func(args)
    except (ValueError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
