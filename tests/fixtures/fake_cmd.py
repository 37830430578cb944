#!/usr/bin/env python3
"""Fake command for integration testing.

Each subcommand exercises one piece of the child side of a Command.

Usage:
    python fake_cmd.py env               print the environment, one KEY=VALUE per line
    python fake_cmd.py cwd               print the working directory
    python fake_cmd.py cat               copy stdin to stdout
    python fake_cmd.py stderr TEXT       write TEXT to stderr
    python fake_cmd.py write-fd FD=TEXT ...
                                         write each TEXT to its inherited descriptor FD
    python fake_cmd.py sleep SECONDS     sleep, exiting 128+signum on SIGTERM/SIGINT
    python fake_cmd.py exit CODE         exit with CODE
    python fake_cmd.py args ...          print each argument on its own line
"""

from __future__ import annotations

import argparse
import os
import signal
import sys
import time
from typing import NoReturn


def signal_handler(signum: int, frame) -> None:
    """Exit the way a shell reports a signalled child."""
    sys.exit(128 + signum)


def main() -> NoReturn:
    parser = argparse.ArgumentParser(description="Fake command for testing")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("env")
    sub.add_parser("cwd")
    sub.add_parser("cat")
    p = sub.add_parser("stderr")
    p.add_argument("text")
    p = sub.add_parser("write-fd")
    p.add_argument("writes", nargs="+", metavar="FD=TEXT")
    p = sub.add_parser("sleep")
    p.add_argument("seconds", type=float)
    p = sub.add_parser("exit")
    p.add_argument("code", type=int)
    p = sub.add_parser("args")
    p.add_argument("rest", nargs=argparse.REMAINDER)

    args = parser.parse_args()

    if args.command == "env":
        for key, value in sorted(os.environ.items()):
            print(f"{key}={value}")
    elif args.command == "cwd":
        print(os.getcwd())
    elif args.command == "cat":
        sys.stdout.buffer.write(sys.stdin.buffer.read())
    elif args.command == "stderr":
        print(args.text, file=sys.stderr)
    elif args.command == "write-fd":
        for write in args.writes:
            fd, _, text = write.partition("=")
            os.write(int(fd), text.encode())
    elif args.command == "sleep":
        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)
        print("sleeping", flush=True)
        time.sleep(args.seconds)
    elif args.command == "exit":
        sys.exit(args.code)
    elif args.command == "args":
        for arg in args.rest:
            print(arg)

    sys.stdout.flush()
    sys.exit(0)


if __name__ == "__main__":
    main()
