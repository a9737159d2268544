"""HTTP transport to the bandwidth-log collector and the time-series sink."""

import asyncio
import logging

import aiohttp

from ingestor.errors import DeliveryError

logger = logging.getLogger(__name__)

# Measurement, tags and field schema written to the time-series sink
POINT_MEASUREMENT = "http"
FIELD_SCHEMA = {
    "addr": "string",
    "b": "integer",
    "lt": "string",
    "r": "string",
    "ref": "string",
    "rid": "string",
    "rt": "string",
    "s": "string",
    "ua": "string",
    "ucs": "string",
}


def _escape_key(value: str) -> str:
    return value.replace("\\", "\\\\").replace(",", "\\,").replace("=", "\\=").replace(" ", "\\ ")


def _format_field(kind: str, value) -> str | None:
    if kind == "integer":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return f"{int(value)}i"
    if isinstance(value, bool):
        value = "HIT" if value else "MISS"
    text = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def format_point(fields: dict, tags: dict, measurement: str = POINT_MEASUREMENT) -> str | None:
    """Render one line-protocol point.

    Fields outside FIELD_SCHEMA, None values and values that do not fit the
    declared type are stripped. Returns None when no field survives.
    """
    rendered = []
    for key, kind in FIELD_SCHEMA.items():
        value = fields.get(key)
        if value is None:
            continue
        formatted = _format_field(kind, value)
        if formatted is not None:
            rendered.append(f"{key}={formatted}")
    if not rendered:
        return None

    tag_str = "".join(
        f",{_escape_key(str(k))}={_escape_key(str(v))}" for k, v in sorted(tags.items())
    )
    return f"{measurement}{tag_str} {','.join(rendered)}"


class CollectorClient:
    """Posts bandwidth logs to the collector and points to InfluxDB.

    The session is owned by the caller and shared with registration.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        submit_url: str,
        influxdb_addr: str = "",
        influxdb_database: str = "saturn",
        submit_timeout: float = 30.0,
    ):
        self._session = session
        self._submit_url = submit_url
        self._influxdb_addr = influxdb_addr
        self._influxdb_database = influxdb_database
        self._timeout = aiohttp.ClientTimeout(total=submit_timeout)

    @property
    def points_enabled(self) -> bool:
        return bool(self._influxdb_addr)

    async def submit_retrievals(self, body: dict, token: str):
        """POST one delivery payload. Raises DeliveryError on any failure."""
        headers = {
            "Authentication": token,
            "Content-Type": "application/json",
        }
        try:
            async with self._session.post(
                self._submit_url, json=body, headers=headers, timeout=self._timeout,
            ) as resp:
                if resp.status >= 300:
                    text = await resp.text()
                    raise DeliveryError(
                        f"Collector returned {resp.status}: {text[:200]}",
                        status=resp.status,
                    )
        except aiohttp.ClientError as exc:
            raise DeliveryError(f"{type(exc).__name__}: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise DeliveryError("Timed out submitting retrievals") from exc

    async def write_point(self, fields: dict, tags: dict) -> bool:
        """Write one point to the time-series sink. Returns False if stripped."""
        line = format_point(fields, tags)
        if line is None:
            return False
        url = f"http://{self._influxdb_addr}/write"
        async with self._session.post(
            url,
            params={"db": self._influxdb_database},
            data=line.encode("utf-8"),
            timeout=self._timeout,
        ) as resp:
            if resp.status >= 300:
                text = await resp.text()
                raise DeliveryError(
                    f"Time-series sink returned {resp.status}: {text[:200]}",
                    status=resp.status,
                )
        return True
