"""Tests for pooler region discovery."""

import asyncio
import socket
import struct
from unittest.mock import patch

import pytest

from pg_mirror import region_probe
from pg_mirror.region_probe import (
    PROTOCOL_VERSION,
    AuthenticationChallenge,
    ErrorResponse,
    OtherMessage,
    ProbeOutcome,
    build_startup_message,
    classify_response,
    detect_region,
    parse_response,
    probe_endpoint,
    probe_regions,
)
from pg_mirror.urls import SUPABASE

AUTH_REQUEST = b"R" + struct.pack("!II", 12, 10) + b"SCRAM"


def error_message(text: str) -> bytes:
    fields = b"SFATAL\x00" + b"VFATAL\x00" + b"CXX000\x00" + b"M" + text.encode() + b"\x00" + b"\x00"
    return b"E" + struct.pack("!I", len(fields) + 4) + fields


TENANT_NOT_FOUND = error_message("Tenant or user not found")


def test_startup_message_layout():
    message = build_startup_message("postgres.abc", "postgres")
    (length, version) = struct.unpack("!II", message[:8])
    assert length == len(message)
    assert version == PROTOCOL_VERSION
    assert message[8:] == b"user\x00postgres.abc\x00database\x00postgres\x00\x00"


def test_parse_authentication_request():
    assert parse_response(AUTH_REQUEST) == AuthenticationChallenge()


def test_parse_error_response():
    response = parse_response(error_message("password authentication failed"))
    assert isinstance(response, ErrorResponse)
    assert response.text == "password authentication failed"
    assert response.fields["S"] == "FATAL"


def test_parse_other_and_empty():
    assert parse_response(b"N") == OtherMessage(tag="N")
    assert parse_response(b"") == OtherMessage(tag="")


@pytest.mark.parametrize("data, expected", [
    (AUTH_REQUEST, ProbeOutcome.MATCHED),
    (TENANT_NOT_FOUND, ProbeOutcome.REJECTED),
    (error_message("FATAL: tenant or user not found"), ProbeOutcome.REJECTED),
    (error_message("invalid startup packet"), ProbeOutcome.MATCHED),
    (b"S\x00\x00\x00\x04", ProbeOutcome.INCONCLUSIVE),
])
def test_classify_response(data, expected):
    assert classify_response(parse_response(data)) is expected


async def _serve(reply: bytes, respond: bool = True):
    """Local server that answers the first startup message with `reply`"""
    async def handle(reader, writer):
        try:
            (length,) = struct.unpack("!I", await reader.readexactly(4))
            await reader.readexactly(length - 4)
            if respond:
                writer.write(reply)
                await writer.drain()
            else:
                # wait for the client to give up
                await reader.read()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    return server, port


@pytest.mark.asyncio
async def test_probe_endpoint_matched():
    server, port = await _serve(AUTH_REQUEST)
    async with server:
        outcome = await probe_endpoint("127.0.0.1", port, "postgres.abc", "postgres", timeout=2)
    assert outcome is ProbeOutcome.MATCHED


@pytest.mark.asyncio
async def test_probe_endpoint_rejected():
    server, port = await _serve(TENANT_NOT_FOUND)
    async with server:
        outcome = await probe_endpoint("127.0.0.1", port, "postgres.abc", "postgres", timeout=2)
    assert outcome is ProbeOutcome.REJECTED


@pytest.mark.asyncio
async def test_probe_endpoint_timeout_is_inconclusive():
    server, port = await _serve(b"", respond=False)
    async with server:
        outcome = await probe_endpoint("127.0.0.1", port, "postgres.abc", "postgres", timeout=0.2)
    assert outcome is ProbeOutcome.INCONCLUSIVE


@pytest.mark.asyncio
async def test_probe_endpoint_refused_is_inconclusive():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    outcome = await probe_endpoint("127.0.0.1", port, "postgres.abc", "postgres", timeout=2)
    assert outcome is ProbeOutcome.INCONCLUSIVE


@pytest.mark.asyncio
async def test_only_true_region_matches():
    """Every pooler except the tenant's own says 'Tenant or user not found'"""
    true_host = SUPABASE.pooler_host("eu-west-2")
    seen = []

    async def fake_exchange(host, port, message):
        seen.append((host, port, message))
        return AUTH_REQUEST if host == true_host else TENANT_NOT_FOUND

    with patch.object(region_probe, "_exchange", side_effect=fake_exchange):
        results = await probe_regions("abcdefghijklmnop")

    assert [region for region, _ in results] == list(region_probe.REGION_IDS)
    for region, outcome in results:
        expected = ProbeOutcome.MATCHED if region == "eu-west-2" else ProbeOutcome.REJECTED
        assert outcome is expected
    assert all(port == 5432 for _, port, _ in seen)
    assert all(b"postgres.abcdefghijklmnop\x00" in message for _, _, message in seen)


def _fake_probe(outcomes, delays):
    async def probe(tenant_ref, region, profile, timeout):
        await asyncio.sleep(delays.get(region, 0))
        return outcomes[region]
    return probe


@pytest.mark.asyncio
async def test_detect_region_prefers_candidate_order_over_speed():
    outcomes = {
        "us-east-1": ProbeOutcome.REJECTED,
        "eu-west-1": ProbeOutcome.MATCHED,
        "ap-south-1": ProbeOutcome.MATCHED,
    }
    delays = {"eu-west-1": 0.1}

    with patch.object(region_probe, "probe_region", side_effect=_fake_probe(outcomes, delays)):
        region = await detect_region("abc", candidates=list(outcomes))

    assert region == "eu-west-1"


@pytest.mark.asyncio
async def test_detect_region_inconclusive_counts_as_no_match():
    outcomes = {
        "us-east-1": ProbeOutcome.INCONCLUSIVE,
        "eu-west-1": ProbeOutcome.REJECTED,
    }
    with patch.object(region_probe, "probe_region", side_effect=_fake_probe(outcomes, {})):
        assert await detect_region("abc", candidates=list(outcomes)) is None


@pytest.mark.asyncio
async def test_detect_region_waits_for_all_probes():
    finished = []

    async def probe(tenant_ref, region, profile, timeout):
        await asyncio.sleep(0.05 if region == "slow" else 0)
        finished.append(region)
        return ProbeOutcome.MATCHED if region == "fast" else ProbeOutcome.REJECTED

    with patch.object(region_probe, "probe_region", side_effect=probe):
        region = await detect_region("abc", candidates=["fast", "slow"])

    assert region == "fast"
    assert sorted(finished) == ["fast", "slow"]
