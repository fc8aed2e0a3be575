"""
Command-line client for Passdrop.

    passdrop relay                      run the relay server
    passdrop passcode                   ask the relay for a new passcode
    passdrop receive [PASSCODE]         wait for files (issues a passcode if omitted)
    passdrop send PASSCODE FILE         send one file to the paired peer
"""

import argparse
import asyncio
import logging
import sys

import httpx

from config import ACK_TIMEOUT, API_URL, DEFAULT_SAVE_DIR, RELAY_URL
from errors import PassdropError
from transfer.delivery import DirectorySink
from transfer.manager import TransferManager
from transfer.sender import UnacknowledgedStreaming, WindowedAck

logger = logging.getLogger(__name__)


async def request_passcode(api_url: str = API_URL) -> str:
    async with httpx.AsyncClient(timeout=10.0) as client:
        response = await client.post(f"{api_url.rstrip('/')}/api/passcode")
        response.raise_for_status()
        return response.json()["passcode"]


async def _print_progress(event_type: str, data: dict) -> None:
    if event_type == "transfer_progress":
        print(
            f"\r{data['direction']:>9} {data['file_name']}: {data['progress_percent']:3d}%",
            end="",
            flush=True,
        )
        if data["progress_percent"] == 100:
            print()
    elif event_type == "transfer_failed":
        print(f"\nTransfer of {data['file_name']} failed: {data['error_message']}")


async def cmd_passcode(args: argparse.Namespace) -> int:
    print(await request_passcode(args.api))
    return 0


async def cmd_send(args: argparse.Namespace) -> int:
    strategy = (lambda: WindowedAck(args.window)) if args.window else UnacknowledgedStreaming
    manager = await TransferManager.connect(
        args.passcode,
        url=args.relay,
        ack_timeout=args.ack_timeout,
        ack_strategy_factory=strategy,
        display_delay=0,
    )
    manager.on_event(_print_progress)
    try:
        print(f"Waiting for a peer on {manager.passcode}...")
        await manager.wait_paired(args.wait)
        info = await manager.send_file(args.file, media_type=args.type)
        print(f"Sent {info.file_name} ({info.file_size} bytes) as {info.transfer_id}")
        return 0
    finally:
        await manager.close()


async def cmd_receive(args: argparse.Namespace) -> int:
    passcode = args.passcode or await request_passcode(args.api)
    sink = DirectorySink(args.save_dir)
    manager = await TransferManager.connect(passcode, url=args.relay, deliver=sink)
    manager.on_event(_print_progress)
    try:
        print(f"Passcode: {manager.passcode}")
        await manager.wait_paired(args.wait)
        print("Peer connected, waiting for files")
        for _ in range(args.count):
            delivery = await manager.next_incoming()
            print(f"Received {delivery.file_name} ({len(delivery.payload)} bytes)")
        if sink.saved:
            print(f"Saved to {sink.saved[-1].parent}")
        return 0
    finally:
        await manager.close()


def cmd_relay(args: argparse.Namespace) -> int:
    from main import run

    run()
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="passdrop", description="Passcode file transfer")
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    p.add_argument("--relay", default=RELAY_URL, help="relay WebSocket URL")
    p.add_argument("--api", default=API_URL, help="relay HTTP base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("relay", help="run the relay server")
    sub.add_parser("passcode", help="request a new passcode")

    send = sub.add_parser("send", help="send a file")
    send.add_argument("passcode")
    send.add_argument("file")
    send.add_argument("--type", default=None, help="media type (guessed if omitted)")
    send.add_argument("--window", type=int, default=0, help="ack window, 0 disables")
    send.add_argument("--ack-timeout", type=float, default=ACK_TIMEOUT)
    send.add_argument("--wait", type=float, default=None, help="seconds to wait for a peer")

    recv = sub.add_parser("receive", help="receive files")
    recv.add_argument("passcode", nargs="?", default=None)
    recv.add_argument("--save-dir", default=DEFAULT_SAVE_DIR)
    recv.add_argument("--count", type=int, default=1, help="files to receive")
    recv.add_argument("--wait", type=float, default=None, help="seconds to wait for a peer")
    return p


_COMMANDS = {
    "passcode": cmd_passcode,
    "send": cmd_send,
    "receive": cmd_receive,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    if args.cmd == "relay":
        return cmd_relay(args)
    try:
        return asyncio.run(_COMMANDS[args.cmd](args))
    except (PassdropError, ConnectionError, httpx.HTTPError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except asyncio.TimeoutError:
        print("error: timed out waiting for a peer", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
