from __future__ import annotations

import logging
import signal

from app.automation.runtime import build_runtime
from app.core.config import get_settings
from app.core.database import SessionLocal
from app.logging import configure_logging
from app.otel import setup_otel


logger = logging.getLogger("app.worker")


def main() -> None:
    """Run the step scheduler as a standalone process."""
    configure_logging()
    settings = get_settings()
    if settings.otel_enabled:
        setup_otel("crm-automation-scheduler", True)

    runtime = build_runtime(SessionLocal, settings)
    scheduler = runtime.scheduler

    def _shutdown(signum, frame):  # type: ignore[no-untyped-def]
        logger.info("automation.worker.signal", extra={"status": signal.Signals(signum).name})
        scheduler.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    scheduler.run_forever()


if __name__ == "__main__":
    main()
