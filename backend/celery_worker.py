from __future__ import annotations

import sys

from upload_server.core.config import settings
from upload_server.worker import celery_app


def main(argv: list[str] | None = None) -> None:
    # solo pool: one merge at a time per worker process
    args = ["worker", f"--loglevel={settings.log_level.lower()}", "-P", "solo"]
    args.extend(sys.argv[1:] if argv is None else argv)
    celery_app.worker_main(argv=args)


if __name__ == "__main__":
    main()
