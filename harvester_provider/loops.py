import logging
import threading

from harvester_provider.clients.harvester import HarvesterClient
from harvester_provider.config import get_settings
from harvester_provider.credentials import resolve_provider_credentials
from harvester_provider.db import session_scope
from harvester_provider.metrics import metrics
from harvester_provider.models import ProviderConfig
from harvester_provider.repositories import ConflictError, list_machine_request_keys
from harvester_provider.services.reconciler import ClientFactory, reconcile
from harvester_provider.services.workqueue import WorkQueue


logger = logging.getLogger(__name__)

_settings = get_settings()
work_queue = WorkQueue(_settings.backoff_base_sec, _settings.backoff_max_sec)


def harvester_client_factory(provider_config: ProviderConfig) -> HarvesterClient:
    settings = get_settings()
    kubeconfig = resolve_provider_credentials(provider_config, settings.credentials_dir)
    return HarvesterClient.from_kubeconfig(
        kubeconfig, provider_config, request_timeout=settings.request_timeout_sec
    )


def enqueue_all(queue: WorkQueue) -> int:
    with session_scope() as session:
        keys = list_machine_request_keys(session)
    for key in keys:
        queue.add(key)
    return len(keys)


def process_next(
    queue: WorkQueue, client_factory: ClientFactory, timeout: float | None = 1.0
) -> bool:
    """Reconcile one key from ``queue``; False when nothing was ready."""
    key = queue.get(timeout=timeout)
    if key is None:
        return False
    namespace, name = key
    try:
        result = reconcile(namespace, name, client_factory)
    except ConflictError as exc:
        metrics.inc("reconcile_conflicts_total")
        delay = queue.add_rate_limited(key)
        logger.info("status conflict, retrying in %.1fs: %s", delay, exc)
    except Exception as exc:  # noqa: BLE001
        metrics.inc("reconcile_errors_total")
        delay = queue.add_rate_limited(key)
        logger.exception(
            "reconcile failed machinerequest=%s/%s retry_in=%.1fs: %s",
            namespace,
            name,
            delay,
            exc,
        )
    else:
        queue.forget(key)
        if result.requeue_after:
            queue.add_after(key, result.requeue_after)
        elif result.requeue:
            queue.add(key)
    finally:
        queue.done(key)
    return True


def start_loops(
    stop_event: threading.Event,
    queue: WorkQueue | None = None,
    client_factory: ClientFactory = harvester_client_factory,
) -> list[threading.Thread]:
    settings = get_settings()
    queue = queue or work_queue

    def reconcile_worker() -> None:
        while not stop_event.is_set() and not queue.is_shutdown:
            try:
                process_next(queue, client_factory, timeout=1.0)
            except Exception as exc:  # noqa: BLE001
                logger.exception("reconcile worker tick failed: %s", exc)
                stop_event.wait(1.0)

    def resync_worker() -> None:
        while not stop_event.is_set():
            try:
                count = enqueue_all(queue)
                logger.debug("resync enqueued machinerequests=%d", count)
            except Exception as exc:  # noqa: BLE001
                logger.exception("resync tick failed: %s", exc)
            stop_event.wait(settings.resync_interval_sec)

    threads = [
        threading.Thread(target=reconcile_worker, name=f"reconcile-worker-{i}", daemon=True)
        for i in range(settings.worker_count)
    ]
    threads.append(threading.Thread(target=resync_worker, name="resync-worker", daemon=True))
    for thread in threads:
        thread.start()
    return threads
