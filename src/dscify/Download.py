"""Firmware metadata downloader.

Fetches the device list from ipsw.me, then every device's firmware list
concurrently (bounded by a semaphore) and collects the results in
arrival order. Any failed request fails the whole download.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List

import httpx

from .Errors import MetadataError
from .FileIO import DEFAULT_HEADERS

logger = logging.getLogger(__name__)

DEVICES_URL = "https://api.ipsw.me/v4/devices"
DEVICE_URL = "https://api.ipsw.me/v4/device/{identifier}"
DEFAULT_CONCURRENCY = 16


def _parse_date(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _format_date(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class Device:
    name: str
    identifier: str


@dataclass(frozen=True)
class Firmware:
    version: str
    buildid: str
    sha1sum: str
    filesize: int
    url: str
    uploaddate: datetime
    releasedate: datetime | None = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Firmware":
        return cls(
            version=data["version"],
            buildid=data["buildid"],
            sha1sum=data["sha1sum"],
            filesize=int(data["filesize"]),
            url=data["url"],
            uploaddate=_parse_date(data["uploaddate"]),
            releasedate=_parse_date(data.get("releasedate")),
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "buildid": self.buildid,
            "sha1sum": self.sha1sum,
            "filesize": self.filesize,
            "url": self.url,
            "uploaddate": _format_date(self.uploaddate),
            "releasedate": _format_date(self.releasedate),
        }


@dataclass(frozen=True)
class DeviceFirmwares:
    name: str
    identifier: str
    firmwares: List[Firmware] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "DeviceFirmwares":
        return cls(
            name=data["name"],
            identifier=data["identifier"],
            firmwares=[Firmware.from_json(firmware) for firmware in data.get("firmwares", [])],
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "identifier": self.identifier,
            "firmwares": [firmware.to_json() for firmware in self.firmwares],
        }


async def _get_json(client: httpx.AsyncClient, url: str) -> Any:
    try:
        response = await client.get(url)
        response.raise_for_status()
        return response.json()
    except (httpx.HTTPError, ValueError) as e:
        raise MetadataError(f"Request to {url} failed: {e}") from e


async def fetch_devices(client: httpx.AsyncClient) -> List[Device]:
    data = await _get_json(client, DEVICES_URL)
    try:
        return [Device(name=device["name"], identifier=device["identifier"]) for device in data]
    except (KeyError, TypeError) as e:
        raise MetadataError(f"Unexpected device list: {e}") from e


async def fetch_device_firmwares(client: httpx.AsyncClient, identifier: str) -> DeviceFirmwares:
    data = await _get_json(client, DEVICE_URL.format(identifier=identifier))
    try:
        return DeviceFirmwares.from_json(data)
    except (KeyError, TypeError, ValueError) as e:
        raise MetadataError(f"Unexpected firmware list for {identifier}: {e}") from e


async def download_metadata(client: httpx.AsyncClient | None = None,
                            concurrency: int = DEFAULT_CONCURRENCY) -> List[DeviceFirmwares]:
    """Download the firmware lists of every device known to ipsw.me.

    Args:
        client (httpx.AsyncClient | None): Client to use; one is created and
            closed here when omitted.
        concurrency (int): Maximum number of device requests in flight.

    Returns:
        List[DeviceFirmwares]: One entry per device, in order of arrival.

    Raises:
        MetadataError: If any request fails or returns unexpected data. The
            remaining requests are cancelled.
    """
    owns_client = client is None
    client = client or httpx.AsyncClient(
        headers=DEFAULT_HEADERS,
        follow_redirects=True,
        timeout=httpx.Timeout(10.0, read=60.0),
    )
    try:
        devices = await fetch_devices(client)
        logger.info("Fetching firmware lists for %d devices", len(devices))
        semaphore = asyncio.Semaphore(concurrency)

        async def fetch(device: Device) -> DeviceFirmwares:
            async with semaphore:
                return await fetch_device_firmwares(client, device.identifier)

        tasks = [asyncio.create_task(fetch(device)) for device in devices]
        results = []
        try:
            for task in asyncio.as_completed(tasks):
                results.append(await task)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return results
    finally:
        if owns_client:
            await client.aclose()


def dumps(results: List[DeviceFirmwares]) -> str:
    return json.dumps([result.to_json() for result in results])


def download(client: httpx.AsyncClient | None = None,
             concurrency: int = DEFAULT_CONCURRENCY) -> List[DeviceFirmwares]:
    """Blocking wrapper around `download_metadata`."""
    return asyncio.run(download_metadata(client, concurrency))
