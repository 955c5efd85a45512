import argparse
import json
import sys
from typing import Any, Dict, List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"
# Slightly above the server's provider + merge deadlines so the server always answers first.
DEFAULT_TIMEOUT_S = 30.0


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_answer(data: Dict[str, Any]) -> None:
    source = data.get("sourceKind")
    if source:
        print(f"[source: {source}]")
    print(data.get("mergedResponse") or "")


def _print_availability(providers: Dict[str, Any]) -> None:
    if not providers:
        print("No providers registered.")
        return
    for pid, info in providers.items():
        state = "available" if info.get("available") else "unavailable"
        reason = info.get("reason")
        suffix = f" ({reason})" if reason else ""
        print(f"- {pid}: {state}{suffix}")


def run_ask(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload: Dict[str, Any] = {"query": args.question}
    settings: Dict[str, Any] = {}
    if args.temperature is not None:
        settings["temperature"] = args.temperature
    if args.system_prompt:
        settings["systemPrompt"] = args.system_prompt
    if settings:
        payload["settings"] = settings
    with httpx.Client() as client:
        try:
            resp = client.post(_join_url(base, "/api/merge"), json=payload, timeout=args.timeout)
        except httpx.RequestError as exc:
            print(f"Request failed: {exc}")
            return 1
        if resp.status_code >= 400:
            print(f"Query rejected: HTTP {resp.status_code}")
            return 1
        data = resp.json()
    if args.json:
        print(json.dumps(data, indent=2))
    else:
        _print_answer(data)
    return 0


def run_availability(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        try:
            resp = client.get(_join_url(base, "/api/availability"), timeout=10)
        except httpx.RequestError as exc:
            print(f"Request failed: {exc}")
            return 1
        if resp.status_code >= 400:
            print(f"Failed to fetch availability: HTTP {resp.status_code}")
            return 1
        _print_availability(resp.json().get("providers") or {})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="DualMerge CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    ask = subparsers.add_parser("ask", help="Ask both providers and print the merged answer")
    ask.add_argument("question", help="Question to submit")
    ask.add_argument("--temperature", type=float, default=None, help="Sampling temperature (0.0-1.0)")
    ask.add_argument("--system-prompt", default=None, help="System prompt sent to both providers")
    ask.add_argument("--json", action="store_true", help="Print the full JSON response")
    ask.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT_S, help="Max wait seconds")

    subparsers.add_parser("availability", help="Show provider availability flags")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "ask":
        return run_ask(args)
    if args.command == "availability":
        return run_availability(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
