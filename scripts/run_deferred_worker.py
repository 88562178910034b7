#!/usr/bin/env python
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from signflow.application import configure_signing_service  # noqa: E402
from signflow.core.logging import configure_logging  # noqa: E402
from signflow.core.settings import Settings  # noqa: E402
from signflow.infrastructure import configure_signing_provider, provider_from_settings  # noqa: E402
from signflow.workers.deferred_queue import DEFAULT_DRAIN_LIMIT, clamp_limit  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Drain due deferred jobs once and print the counters")
    parser.add_argument("--limit", default=DEFAULT_DRAIN_LIMIT, help="maximum number of jobs to process (1-200)")
    args = parser.parse_args()

    settings = Settings.from_env()
    configure_logging(level=settings.log_level, format="json" if settings.log_format == "json" else "console")
    if settings.database_path is None:
        parser.error("SIGNFLOW_DATABASE_PATH must be set; an in-memory queue has nothing to drain")

    service = configure_signing_service(settings)
    provider = provider_from_settings(settings)
    if provider is not None:
        configure_signing_provider(provider)

    summary = asyncio.run(service.queue.drain(clamp_limit(args.limit)))
    print(json.dumps({"ok": True, **summary.to_payload()}))


if __name__ == "__main__":
    main()
