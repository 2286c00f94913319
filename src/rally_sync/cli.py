"""Command-line access to the sync layer."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, TextIO

from .client import SyncClient
from .config import SyncConfig
from .errors import ApiError, HandshakeError
from .models import Conversation, Message
from .transport import TransportEvent


def _message_row(message: Message) -> Dict[str, Any]:
    return {
        "id": message.id,
        "chat_id": message.chat_id,
        "sender": message.sender.first_name or message.sender.id,
        "content": message.content,
        "created_at": message.created_at.isoformat(),
        "reply_to": message.reply_to,
        "pending": message.pending,
    }


def _conversation_row(conversation: Conversation) -> Dict[str, Any]:
    last = conversation.last_message
    return {
        "id": conversation.id,
        "type": conversation.chat_type.value,
        "title": conversation.title,
        "unread": conversation.unread_count,
        "muted": conversation.is_muted,
        "last_message": last.content if last is not None else None,
    }


def _emit(output: TextIO, payload: Any) -> None:
    output.write(json.dumps(payload, sort_keys=True) + "\n")


async def _run_otp_send(client: SyncClient, args: argparse.Namespace, output: TextIO) -> int:
    _emit(output, await client.request_otp(args.phone))
    return 0


async def _run_otp_verify(client: SyncClient, args: argparse.Namespace, output: TextIO) -> int:
    session = await client.verify_otp(args.session_id, args.code)
    user = session.user
    _emit(
        output,
        {
            "authenticated": session.is_authenticated,
            "user_id": user.id if user is not None else None,
            "profile_complete": user.is_profile_complete if user is not None else False,
        },
    )
    return 0


async def _run_chats(client: SyncClient, args: argparse.Namespace, output: TextIO) -> int:
    await client.refresh_conversations()
    for conversation in client.store.conversations():
        _emit(output, _conversation_row(conversation))
    return 0


async def _run_history(client: SyncClient, args: argparse.Namespace, output: TextIO) -> int:
    page = await client.api.get_messages(args.chat_id, before=args.before, limit=args.limit)
    for message in page.messages:
        _emit(output, _message_row(message))
    _emit(output, {"has_more": page.has_more})
    return 0


async def _run_send(client: SyncClient, args: argparse.Namespace, output: TextIO) -> int:
    message = await client.send(args.chat_id, args.text, reply_to=args.reply_to)
    _emit(output, _message_row(message))
    return 0


async def _run_tail(client: SyncClient, args: argparse.Namespace, output: TextIO) -> int:
    def print_event(event: TransportEvent) -> None:
        _emit(output, {"type": event.type, "data": event.payload})

    client.transport.on("*", print_event)
    if not client.transport.is_connected:
        await client.connect()
    await asyncio.sleep(args.seconds)
    return 0


async def _run_logout(client: SyncClient, args: argparse.Namespace, output: TextIO) -> int:
    client.logout()
    _emit(output, {"status": "ok"})
    return 0


_COMMANDS = {
    "otp-send": _run_otp_send,
    "otp-verify": _run_otp_verify,
    "chats": _run_chats,
    "history": _run_history,
    "send": _run_send,
    "tail": _run_tail,
    "logout": _run_logout,
}


async def _dispatch(args: argparse.Namespace, config: SyncConfig, output: TextIO) -> int:
    client = SyncClient(config)
    try:
        await client.start()
        return await _COMMANDS[args.command](client, args, output)
    finally:
        await client.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rally-sync", description="Rally chat sync client")
    parser.add_argument("--base-url", default=None, help="Backend base URL")
    parser.add_argument("--session", default=None, help="Path to the persisted session file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output to stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    otp_send = subparsers.add_parser("otp-send", help="Request a one-time code")
    otp_send.add_argument("phone")

    otp_verify = subparsers.add_parser("otp-verify", help="Verify a one-time code and store the session")
    otp_verify.add_argument("session_id")
    otp_verify.add_argument("code")

    subparsers.add_parser("chats", help="List conversations")

    history = subparsers.add_parser("history", help="Print one page of message history")
    history.add_argument("chat_id")
    history.add_argument("--before", default=None, help="Oldest message id already held")
    history.add_argument("--limit", type=int, default=None)

    send = subparsers.add_parser("send", help="Send a message")
    send.add_argument("chat_id")
    send.add_argument("text")
    send.add_argument("--reply-to", default=None)

    tail = subparsers.add_parser("tail", help="Print push events as JSON lines")
    tail.add_argument("--seconds", type=float, default=60.0)

    subparsers.add_parser("logout", help="Forget the stored session")
    return parser


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    parser = build_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = SyncConfig.from_env().with_overrides(base_url=args.base_url, session_path=args.session)
    stream = output or sys.stdout
    try:
        return asyncio.run(_dispatch(args, config, stream))
    except HandshakeError as exc:
        print(f"error: push connection failed: {exc}", file=sys.stderr)
        return 1
    except ApiError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
