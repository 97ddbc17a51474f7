#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _resolve_api_base_url(explicit_value: str | None) -> str:
    candidate = (explicit_value or "").strip() or os.getenv("DISPATCH_API_BASE_URL", "").strip()
    candidate = candidate or "http://localhost:8000"
    if candidate.endswith("/api/v1/whatsapp"):
        return candidate
    return f"{candidate.rstrip('/')}/api/v1/whatsapp"


def _request_json(method: str, url: str, *, secret: str, payload: dict[str, Any] | None = None) -> tuple[int, Any]:
    body = None if payload is None else json.dumps(payload).encode("utf-8")
    headers = {"Accept": "application/json", "Authorization": f"Bearer {secret}"}
    if payload is not None:
        headers["Content-Type"] = "application/json"
    request = urllib.request.Request(url, data=body, headers=headers, method=method)
    try:
        with urllib.request.urlopen(request, timeout=60) as response:
            return response.status, json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        try:
            return exc.code, json.loads(detail)
        except json.JSONDecodeError:
            return exc.code, {"error": detail}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Trigger one WhatsApp dispatch run manually, optionally enqueueing a job first."
    )
    parser.add_argument(
        "--api-base-url",
        default=None,
        help=(
            "Backend base URL. Accepts either host root (e.g. http://localhost:8000) "
            "or full API prefix (e.g. http://localhost:8000/api/v1/whatsapp)."
        ),
    )
    parser.add_argument("--cron-secret", default=None, help="Defaults to CRON_SECRET from environment/.env.")
    parser.add_argument("--enqueue-to", default=None, help="Enqueue a job for this phone number before dispatching.")
    parser.add_argument("--tenant-id", default="default", help="Tenant for --enqueue-to (default: default).")
    parser.add_argument("--template-key", default="manual", help="Template key for --enqueue-to.")
    parser.add_argument("--text", default=None, help="Literal message text stored as payload.text.")
    return parser.parse_args()


def main() -> int:
    root_dir = Path(__file__).resolve().parents[1]
    _load_dotenv(root_dir / ".env")
    args = parse_args()

    secret = (args.cron_secret or os.getenv("CRON_SECRET", "")).strip()
    if not secret:
        raise SystemExit("CRON_SECRET is required (set .env or pass --cron-secret)")
    api_base_url = _resolve_api_base_url(args.api_base_url)

    if args.enqueue_to:
        payload: dict[str, Any] = {}
        if args.text:
            payload["text"] = args.text
        status, body = _request_json(
            "POST",
            f"{api_base_url}/jobs",
            secret=secret,
            payload={
                "tenant_id": args.tenant_id,
                "to": args.enqueue_to,
                "template_key": args.template_key,
                "payload": payload,
            },
        )
        if status >= 400:
            raise SystemExit(f"enqueue failed with {status}: {json.dumps(body)}")
        print(f"Enqueued job: {json.dumps(body)}")

    status, body = _request_json("POST", f"{api_base_url}/cron/dispatch", secret=secret)
    print(json.dumps(body, indent=2))
    return 0 if status < 400 else 1


if __name__ == "__main__":
    raise SystemExit(main())
