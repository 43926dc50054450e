from __future__ import annotations

import argparse
import json
import logging
import sys

import requests

logger = logging.getLogger("aviary")


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _serve(name: str) -> int:
    # The server stack is only needed by the serve commands.
    import uvicorn

    from aviary import backend, frontend
    from aviary.dataset import DatasetError
    from aviary.settings import BackendSettings, FrontendSettings, split_bind_addr

    settings = BackendSettings() if name == "backend" else FrontendSettings()
    _configure_logging(settings.log_level)
    try:
        if name == "backend":
            app = backend.create_app(settings)
        else:
            app = frontend.create_app(settings)
    except (ValueError, DatasetError) as e:
        logger.error("Unable to start %s: %s", name, e)
        return 1

    host, port = split_bind_addr(settings.bind_addr)
    logger.info("Starting server listen_addr=%r", settings.bind_addr)
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Aviary bird demo services")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("backend", help="Run the bird backend (BIND_ADDR, VERSION, TRACING_URL)")
    sub.add_parser("frontend", help="Run the UI frontend (BIND_ADDR, BACKEND_URL, TRACING_URL)")

    s_shuf = sub.add_parser("shuffle", help="Fetch one bird through a running frontend")
    s_shuf.add_argument("--api", default="http://localhost:6060", help="Frontend base URL")
    s_shuf.add_argument("--delay", help="Synthetic backend delay in seconds")
    s_shuf.add_argument("--error-rate", help="Synthetic backend error percentage (0-100)")

    args = p.parse_args(argv)

    if args.cmd in {"backend", "frontend"}:
        return _serve(args.cmd)

    if args.cmd == "shuffle":
        params = {}
        if args.delay is not None:
            params["delay"] = args.delay
        if args.error_rate is not None:
            params["error-rate"] = args.error_rate
        base = args.api.rstrip("/")
        data = requests.get(f"{base}/shuffle", params=params, timeout=60).json()
        _print(data)
        return 1 if data.get("error") else 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
