import argparse
import sys
import time
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"
STATUS_MARKERS = {"pending": " ", "running": ">", "completed": "x", "error": "!"}


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _error_detail(resp: httpx.Response) -> str:
    try:
        detail = resp.json().get("detail")
    except ValueError:
        detail = None
    return str(detail or resp.text or "").strip()


def _print_plan(plan: dict) -> None:
    if not plan:
        print("No plan data.")
        return
    print(f"{plan.get('id')} [{plan.get('complexity', '?')}] {plan.get('query', '')}")
    for step in plan.get("steps") or []:
        status = step.get("status", "pending")
        print(f"  [{STATUS_MARKERS.get(status, '?')}] {step.get('description', '')}")
        if status == "error" and step.get("error"):
            print(f"      error: {step['error']}")
    summary = plan.get("summary")
    if summary:
        print("")
        print(summary)


def _plan_finished(plan: dict) -> bool:
    return plan.get("summary") is not None


def _poll_plan(client: httpx.Client, base: str, plan_id: str, timeout_s: int = 600, interval_s: float = 2.0) -> int:
    start = time.time()
    seen = None
    while time.time() - start < timeout_s:
        resp = client.get(_join_url(base, f"/api/deep-search/{plan_id}"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch plan: HTTP {resp.status_code} {_error_detail(resp)}")
            return 1
        plan = resp.json()
        progress = [step.get("status") for step in plan.get("steps") or []]
        if progress != seen:
            done = sum(1 for status in progress if status in ("completed", "error"))
            print(f"{done}/{len(progress)} steps finished")
            seen = progress
        if _plan_finished(plan):
            _print_plan(plan)
            return 0
        time.sleep(interval_s)
    print("Timed out waiting for the search to finish.")
    return 1


def run_start(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload = {"query": args.query, "executeAll": not args.plan_only}
    if args.orchestrator:
        payload["orchestratorModel"] = args.orchestrator
    if args.worker:
        payload["workerModel"] = args.worker
    with httpx.Client() as client:
        resp = client.post(_join_url(base, "/api/deep-search"), json=payload, timeout=args.timeout)
        if resp.status_code >= 400:
            print(f"Failed to start search: HTTP {resp.status_code} {_error_detail(resp)}")
            return 1
        plan = resp.json()
        _print_plan(plan)
        if args.wait and not args.plan_only:
            return _poll_plan(client, base, plan["id"], timeout_s=args.timeout)
    return 0


def run_status(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.post(_join_url(base, "/api/deep-search-status"), json={"planId": args.plan_id}, timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch status: HTTP {resp.status_code} {_error_detail(resp)}")
            return 1
        _print_plan(resp.json())
    return 0


def run_stop(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.post(_join_url(base, f"/api/deep-search/{args.plan_id}/stop"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to stop search: HTTP {resp.status_code} {_error_detail(resp)}")
            return 1
        print(f"{args.plan_id}: {resp.json().get('status')}")
    return 0


def run_models(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/models"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to list models: HTTP {resp.status_code}")
            return 1
        models = resp.json()
    if not models:
        print("No model providers available. Check your API keys.")
        return 1
    for model in models:
        print(f"{model['id']}\t{model['name']}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Deep search CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    start = subparsers.add_parser("start", help="Plan and run a deep search")
    start.add_argument("query", help="Question to research")
    start.add_argument("--orchestrator", help="Model id used to plan")
    start.add_argument("--worker", help="Model id used to run steps")
    start.add_argument("--plan-only", action="store_true", help="Create the plan without executing it")
    start.add_argument("--wait", action="store_true", help="Wait for the summary")
    start.add_argument("--timeout", type=int, default=600, help="Max wait seconds")

    status = subparsers.add_parser("status", help="Show a plan's progress")
    status.add_argument("plan_id")

    stop = subparsers.add_parser("stop", help="Stop a running search")
    stop.add_argument("plan_id")

    subparsers.add_parser("models", help="List available model providers")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handlers = {"start": run_start, "status": run_status, "stop": run_stop, "models": run_models}
    handler = handlers.get(args.command)
    if handler is None:
        parser.print_help()
        return 1
    return handler(args)


if __name__ == "__main__":
    sys.exit(main())
