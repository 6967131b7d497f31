"""Worker entry point: declare topology, consume every configured queue, drain on SIGINT/SIGTERM."""
import asyncio
import signal
from typing import Any

from loguru import logger

from relay.app.composition import RelayDependencies, create_relay_dependencies
from relay.app.core import SERVICE_NAME
from relay.app.domain.models import DeliveryOutcome, MessageEnvelope


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


async def log_message(envelope: MessageEnvelope) -> DeliveryOutcome:
    """Default handler: log what arrived and ack it."""
    _log(
        "message_received",
        routing_key=envelope.routing_key,
        message_id=envelope.message_id,
        correlation_id=envelope.correlation_id,
        content_type=envelope.content_type,
        attempt=envelope.delivery_attempt,
        payload=envelope.payload,
    )
    return DeliveryOutcome.ACK


async def run_worker(dependencies: RelayDependencies | None = None, shutdown: asyncio.Event | None = None) -> None:
    dependencies = dependencies or create_relay_dependencies()
    shutdown = shutdown or asyncio.Event()
    await dependencies.connect()
    try:
        for queue_name in dependencies.settings.consumed_queues:
            await dependencies.dispatcher.start(queue_name, log_message)

        def request_shutdown() -> None:
            if not shutdown.is_set():
                _log("shutdown_signal")
                shutdown.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, request_shutdown)
            except (NotImplementedError, RuntimeError, ValueError):
                pass

        _log("worker_started", queues=dependencies.settings.consumed_queues)
        await shutdown.wait()
    finally:
        await dependencies.close()
        _log("worker_stopped")


def main() -> None:
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        _log("worker_interrupted")
    except Exception as e:
        logger.exception("worker failed: {}", e)
        raise


if __name__ == "__main__":
    main()
