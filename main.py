"""Entry point for the bandwidth log ingestor."""

import asyncio
import logging
import signal
import sys

import aiohttp
from aiohttp import web

from ingestor.config import NodeCredentials, load_config, resolve_node_id
from ingestor.errors import ConfigError
from ingestor.registration import Registration, RegistrationOutcome, create_app
from ingestor.service import IngestorService

logger = logging.getLogger(__name__)


def _outcome_of(task: asyncio.Task) -> RegistrationOutcome:
    """Result of a finished registration task; a crash counts as FAILED."""
    try:
        return task.result()
    except Exception:
        logger.exception("Registration loop crashed")
        return RegistrationOutcome.FAILED


async def run(
    config,
    registration_cls=Registration,
    service_cls=IngestorService,
    stop: asyncio.Event | None = None,
) -> int:
    """Run until a signal or a terminal registration outcome. Returns the exit code."""
    credentials = NodeCredentials(
        node_id=resolve_node_id(config),
        wallet_address=config.fil_wallet_address,
        token=config.node_token,
    )
    logger.info("Starting node %s for wallet %s", credentials.node_id, credentials.wallet_address)
    if stop is None:
        stop = asyncio.Event()

    async with aiohttp.ClientSession() as session:
        registration = None
        if config.register:
            registration = registration_cls(session, config, credentials)
            try:
                outcome = await registration.register(initial=True)
            except Exception:
                logger.exception("Initial registration crashed")
                outcome = RegistrationOutcome.FAILED
            if outcome is not RegistrationOutcome.REGISTERED:
                return outcome.exit_code

        runner = web.AppRunner(create_app(credentials.node_id))
        await runner.setup()
        service = service_cls(config, credentials, session)
        loop = asyncio.get_running_loop()
        signals = (signal.SIGTERM, signal.SIGINT)
        try:
            site = web.TCPSite(runner, config.http_host, config.http_port)
            await site.start()
            logger.info("Register check listening on %s:%d", config.http_host, config.http_port)

            await service.start()
            for sig in signals:
                loop.add_signal_handler(sig, stop.set)

            waiters = [asyncio.create_task(stop.wait())]
            if registration is not None:
                waiters.append(asyncio.create_task(registration.run()))

            done, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

            if stop.is_set():
                logger.info("Shutdown signal received, stopping...")
                if registration is not None:
                    await registration.deregister()
                return 0

            outcome = _outcome_of(waiters[1])
            logger.info("Registration ended with %s, exiting", outcome.value)
            return outcome.exit_code
        finally:
            for sig in signals:
                loop.remove_signal_handler(sig)
            await service.stop()
            await runner.cleanup()


def main():
    try:
        config = load_config()
    except ConfigError as exc:
        logging.basicConfig(level=logging.INFO)
        logger.error("Invalid configuration: %s", exc)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    sys.exit(asyncio.run(run(config)))


if __name__ == "__main__":
    main()
