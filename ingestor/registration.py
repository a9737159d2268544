"""Orchestrator registration, TLS certificate checks and the register-check route.

Registration ends in one of three outcomes. REGISTERED keeps the node
running; RESTART and FAILED are terminal and the entry point exits with
code 0 or 1 respectively, leaving the restart to the process supervisor
(docker restart policy, systemd, ...).
"""

import asyncio
import logging
import os
import random
from datetime import datetime, timedelta, timezone
from enum import Enum

import aiohttp
from aiohttp import web
from cryptography import x509

from ingestor.config import Config, NodeCredentials
from ingestor.errors import RegistrationError
from ingestor.system import collect_stats

logger = logging.getLogger(__name__)

CERT_EXPIRY_MARGIN = timedelta(days=5)
# Issuing a new certificate can take up to 20 minutes
CERT_REQUEST_TIMEOUT = 30 * 60
REREGISTER_TIMEOUT = 60


class RegistrationOutcome(Enum):
    REGISTERED = "registered"
    RESTART = "restart"
    FAILED = "failed"

    @property
    def exit_code(self) -> int | None:
        return {"restart": 0, "failed": 1}.get(self.value)


class Registration:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        config: Config,
        credentials: NodeCredentials,
        stats_fn=collect_stats,
        now_func=None,
    ):
        self._session = session
        self._config = config
        self._credentials = credentials
        self._stats_fn = stats_fn
        self._now = now_func or (lambda: datetime.now(timezone.utc))
        self.cert_path = os.path.join(config.ssl_path, "node.crt")
        self.key_path = os.path.join(config.ssl_path, "node.key")

    def build_body(self) -> dict:
        body = {
            "nodeId": self._credentials.node_id,
            "version": self._config.node_version,
            "filWalletAddress": self._credentials.wallet_address,
            "operatorEmail": self._config.operator_email,
        }
        body.update(self._stats_fn())
        return body

    def next_delay(self) -> float:
        """Seconds until the next re-registration."""
        if self._config.network == "local":
            return 60.0
        return random.uniform(4, 6) * 60

    async def register(self, initial: bool = False) -> RegistrationOutcome:
        body = self.build_body()

        if not os.path.exists(self.cert_path):
            return await self._request_certificate(body)

        if initial and self._certificate_expiring():
            logger.info("Certificate is soon to expire, deleting and rebooting...")
            self._remove_credentials()
            return RegistrationOutcome.RESTART

        logger.info("Re-registering with orchestrator...")
        try:
            token = await self._reregister(body)
        except RegistrationError as exc:
            logger.error("Failed re-registration: %s", exc)
            if initial:
                return RegistrationOutcome.FAILED
            return RegistrationOutcome.REGISTERED

        self._credentials.token = token
        logger.info("Successful re-registration, updated token")
        return RegistrationOutcome.REGISTERED

    def _certificate_expiring(self) -> bool:
        try:
            with open(self.cert_path, "rb") as f:
                cert = x509.load_pem_x509_certificate(f.read())
        except (OSError, ValueError) as exc:
            logger.error("Unreadable certificate %s: %s", self.cert_path, exc)
            return True
        valid_to = cert.not_valid_after_utc
        if self._now() > valid_to - CERT_EXPIRY_MARGIN:
            return True
        logger.info("Certificate is valid until %s", valid_to.isoformat())
        return False

    async def _request_certificate(self, body: dict) -> RegistrationOutcome:
        try:
            os.makedirs(self._config.ssl_path, exist_ok=True)
        except OSError as exc:
            logger.error("Cannot create SSL directory %s: %s", self._config.ssl_path, exc)
            return RegistrationOutcome.FAILED
        logger.info(
            "Registering with orchestrator, requesting new TLS cert... "
            "(this could take up to 20 mins)"
        )
        try:
            data = await self._post_json(
                "/register", body, timeout=CERT_REQUEST_TIMEOUT
            )
            cert, key = data.get("cert"), data.get("key")
            if not cert or not key:
                raise RegistrationError(data.get("error") or "Empty cert or key received")
        except RegistrationError as exc:
            logger.error("Failed registration: %s", exc)
            return RegistrationOutcome.FAILED

        logger.info("TLS cert and key received, persisting to shared volume...")
        try:
            with open(self.cert_path, "w", encoding="utf-8") as f:
                f.write(cert)
            with open(self.key_path, "w", encoding="utf-8") as f:
                f.write(key)
        except OSError as exc:
            logger.error("Failed to persist TLS cert and key: %s", exc)
            self._remove_credentials()
            return RegistrationOutcome.FAILED
        logger.info("Successful registration, restart required")
        return RegistrationOutcome.RESTART

    def _remove_credentials(self):
        """Delete cert and key so the next start requests a fresh pair."""
        for path in (self.cert_path, self.key_path):
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Could not remove %s: %s", path, exc)

    async def _reregister(self, body: dict) -> str:
        data = await self._post_json(
            "/register", body, params={"ssl": "done"}, timeout=REREGISTER_TIMEOUT
        )
        token = data.get("token")
        if not token:
            raise RegistrationError(data.get("error") or "No token in response")
        return token

    async def _post_json(self, path: str, body: dict, params=None, timeout: float = 60) -> dict:
        url = self._config.orchestrator_url.rstrip("/") + path
        try:
            async with self._session.post(
                url, json=body, params=params,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                try:
                    data = await resp.json(content_type=None)
                except ValueError as exc:
                    raise RegistrationError(
                        f"Invalid JSON from orchestrator (status {resp.status})"
                    ) from exc
        except aiohttp.ClientError as exc:
            raise RegistrationError(f"{type(exc).__name__}: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise RegistrationError(f"Timed out calling {path}") from exc

        if not isinstance(data, dict):
            raise RegistrationError(f"Unexpected response from orchestrator: {data!r}")
        if resp.status >= 300:
            logger.debug("Received status %d with %s", resp.status, data)
        return data

    async def run(self) -> RegistrationOutcome:
        """Re-register forever. Returns only on a terminal outcome."""
        while True:
            await asyncio.sleep(self.next_delay())
            outcome = await self.register(initial=False)
            if outcome is not RegistrationOutcome.REGISTERED:
                return outcome

    async def deregister(self):
        """Best-effort notice on shutdown, bounded by deregister_timeout."""
        logger.info("De-registering from orchestrator")
        url = self._config.orchestrator_url.rstrip("/") + "/deregister"
        try:
            async with self._session.post(
                url,
                json={"nodeId": self._credentials.node_id},
                timeout=aiohttp.ClientTimeout(total=self._config.deregister_timeout),
            ) as resp:
                resp.raise_for_status()
            logger.info("De-registered successfully")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("De-registration failed: %s", exc)


def create_app(node_id: str) -> web.Application:
    """HTTP app exposing the orchestrator's register-check probe."""

    async def register_check(request: web.Request) -> web.Response:
        received = request.query.get("nodeId")
        if received != node_id:
            logger.warning(
                "Check failed, nodeId mismatch. Received: %s from IP %s",
                received, (request.remote or "").replace("::ffff:", ""),
            )
            return web.Response(status=403, text="Forbidden")
        logger.debug("Register check successful")
        return web.Response(status=200, text="OK")

    app = web.Application()
    app.router.add_get("/register-check", register_check)
    return app
