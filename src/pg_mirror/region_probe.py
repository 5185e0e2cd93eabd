"""
Pooler region discovery.

The provider's pooler is a multi-tenant proxy: every region accepts TCP
connections, but only the region hosting a project knows its tenant. A
PostgreSQL StartupMessage for user `postgres.<ref>` is enough to tell them
apart. The right region answers with an authentication request (or some
other error about the login), the others answer "Tenant or user not found".
No password is ever sent.
"""

import asyncio
import logging
import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .urls import REGION_IDS, SUPABASE, ProviderProfile

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 196608  # 3.0
PROBE_TIMEOUT = 5.0
TENANT_NOT_FOUND_MARKER = "Tenant or user not found"

# Type byte + int32 length
HEADER_SIZE = 5
MAX_MESSAGE_SIZE = 64 * 1024


class ProbeOutcome(str, Enum):
    MATCHED = "matched"
    REJECTED = "rejected"
    INCONCLUSIVE = "inconclusive"


@dataclass(frozen=True)
class AuthenticationChallenge:
    """'R' message: the server wants credentials, so it knows the tenant"""


@dataclass(frozen=True)
class ErrorResponse:
    """'E' message"""
    text: str
    fields: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class OtherMessage:
    tag: str


Response = Union[AuthenticationChallenge, ErrorResponse, OtherMessage]


def build_startup_message(user: str, database: str) -> bytes:
    """Build a StartupMessage: length, protocol version, key/value pairs, NUL"""
    body = struct.pack("!I", PROTOCOL_VERSION)
    for key, value in (("user", user), ("database", database)):
        body += key.encode() + b"\x00" + value.encode() + b"\x00"
    body += b"\x00"
    return struct.pack("!I", len(body) + 4) + body


def _parse_error_fields(payload: bytes) -> Dict[str, str]:
    fields = {}
    for chunk in payload.split(b"\x00"):
        if not chunk:
            continue
        code = chunk[:1].decode("ascii", errors="replace")
        fields[code] = chunk[1:].decode("utf-8", errors="replace")
    return fields


def parse_response(data: bytes) -> Response:
    """Decode the first backend message of a startup exchange"""
    if not data:
        return OtherMessage(tag="")

    tag = chr(data[0])
    if tag == "R":
        return AuthenticationChallenge()
    if tag == "E":
        fields = _parse_error_fields(data[HEADER_SIZE:])
        # 'M' is the human readable message; fall back to everything we got
        text = fields.get("M") or " ".join(fields.values())
        return ErrorResponse(text=text, fields=fields)
    return OtherMessage(tag=tag)


def classify_response(response: Response) -> ProbeOutcome:
    if isinstance(response, AuthenticationChallenge):
        return ProbeOutcome.MATCHED
    if isinstance(response, ErrorResponse):
        if TENANT_NOT_FOUND_MARKER.lower() in response.text.lower():
            return ProbeOutcome.REJECTED
        # Any other complaint means the tenant exists here
        return ProbeOutcome.MATCHED
    return ProbeOutcome.INCONCLUSIVE


async def _read_message(reader: asyncio.StreamReader) -> bytes:
    header = await reader.readexactly(HEADER_SIZE)
    (length,) = struct.unpack("!I", header[1:])
    body_size = min(max(length - 4, 0), MAX_MESSAGE_SIZE)
    body = await reader.readexactly(body_size) if body_size else b""
    return header + body


async def _exchange(host: str, port: int, message: bytes) -> bytes:
    reader, writer = await asyncio.open_connection(host, port)
    try:
        writer.write(message)
        await writer.drain()
        return await _read_message(reader)
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass


async def probe_endpoint(host: str, port: int, user: str, database: str,
                         timeout: float = PROBE_TIMEOUT) -> ProbeOutcome:
    """Send a StartupMessage to host:port and classify the first reply"""
    message = build_startup_message(user, database)
    try:
        data = await asyncio.wait_for(_exchange(host, port, message), timeout)
    except asyncio.TimeoutError:
        logger.debug(f"Probe of {host}:{port} timed out after {timeout:g}s")
        return ProbeOutcome.INCONCLUSIVE
    except (OSError, asyncio.IncompleteReadError) as err:
        logger.debug(f"Probe of {host}:{port} failed: {err}")
        return ProbeOutcome.INCONCLUSIVE

    response = parse_response(data)
    outcome = classify_response(response)
    if isinstance(response, ErrorResponse):
        logger.debug(f"{host}: {response.text} -> {outcome.value}")
    return outcome


async def probe_region(tenant_ref: str, region: str,
                       profile: ProviderProfile = SUPABASE,
                       timeout: float = PROBE_TIMEOUT) -> ProbeOutcome:
    return await probe_endpoint(
        profile.pooler_host(region),
        profile.pooler_port,
        user=f"{profile.default_user}.{tenant_ref}",
        database=profile.default_database,
        timeout=timeout,
    )


async def probe_regions(tenant_ref: str, candidates: Sequence[str] = REGION_IDS,
                        profile: ProviderProfile = SUPABASE,
                        timeout: float = PROBE_TIMEOUT) -> List[Tuple[str, ProbeOutcome]]:
    """Probe every candidate concurrently; results come back in candidate order"""
    outcomes = await asyncio.gather(*(
        probe_region(tenant_ref, region, profile, timeout) for region in candidates
    ))
    return list(zip(candidates, outcomes))


async def detect_region(tenant_ref: str, candidates: Sequence[str] = REGION_IDS,
                        profile: ProviderProfile = SUPABASE,
                        timeout: float = PROBE_TIMEOUT) -> Optional[str]:
    """
    Find the pooler region serving `tenant_ref`.

    Waits for every probe to settle, then returns the first match in
    candidate order, not the first probe to answer, so repeated runs
    pick the same region. Returns None when nothing matched.
    """
    logger.info(f"Probing {len(candidates)} pooler regions for project {tenant_ref}")
    results = await probe_regions(tenant_ref, candidates, profile, timeout)

    for region, outcome in results:
        logger.debug(f"  {region}: {outcome.value}")

    for region, outcome in results:
        if outcome is ProbeOutcome.MATCHED:
            logger.info(f"Detected region: {region}")
            return region

    inconclusive = [r for r, o in results if o is ProbeOutcome.INCONCLUSIVE]
    if inconclusive:
        logger.warning(f"No answer from {len(inconclusive)} region(s): {', '.join(inconclusive)}")
    logger.warning("Could not detect region")
    return None
