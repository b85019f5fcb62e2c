import logging
import threading

from fastapi import FastAPI

from harvester_provider.api import router
from harvester_provider.config import get_settings
from harvester_provider.db import init_db
from harvester_provider.logging_config import configure_logging
from harvester_provider.loops import start_loops, work_queue


logger = logging.getLogger(__name__)
stop_event = threading.Event()
loop_threads: list[threading.Thread] = []


app = FastAPI(title="Harvester Machine Provider")
app.include_router(router)


@app.on_event("startup")
def startup() -> None:
    configure_logging()
    settings = get_settings()
    init_db()

    if not settings.disable_background_loops:
        global loop_threads
        loop_threads = start_loops(stop_event)
    logger.info(
        "harvester-provider startup complete workers=%d loops_enabled=%s",
        settings.worker_count,
        not settings.disable_background_loops,
    )


@app.on_event("shutdown")
def shutdown() -> None:
    stop_event.set()
    work_queue.shutdown()
    for thread in loop_threads:
        thread.join(timeout=1)
