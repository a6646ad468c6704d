"""Project root entry point for launching the HTTP API."""

from __future__ import annotations

import os


def main():
    from transloom.web import create_app
    from transloom.web.routes.jobs import current_orchestrator
    from transloom.logger import get_logger

    logger = get_logger("transloom.run")
    app = create_app()

    with app.app_context():
        resumed = current_orchestrator().resume_incomplete_jobs()
    if resumed:
        logger.info(f"Resumed {len(resumed)} unfinished jobs")

    port = int(os.environ.get("TRANSLOOM_PORT", "5500"))
    # The reloader would start a second process resuming the same jobs
    app.run(host="0.0.0.0", port=port, debug=False, use_reloader=False)


if __name__ == "__main__":
    main()
