from __future__ import annotations

import asyncio
import socket
import ssl
import time
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlsplit

import httpx
import structlog
from cryptography import x509

from health_checks.models import ClientSettings, ProbeKind, RawCheckResult, Target


logger = structlog.get_logger(__name__)

_IP_PLACEHOLDER = "[IP]"
_CERTIFICATE_PLACEHOLDER = "[CERTIFICATE_EXPIRATION]"


def _error_text(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


def _elapsed(started: float) -> float:
    return time.perf_counter() - started


def _host_port(url: str, *, default_port: int | None = None) -> tuple[str, int | None]:
    s = str(url or "").strip()
    if "://" not in s:
        s = f"//{s}"
    parts = urlsplit(s)
    host = (parts.hostname or "").strip()
    if not host:
        raise ValueError(f"Missing host in {url!r}")
    return host, parts.port or default_port


def _parse_cert_not_after(cert: dict[str, Any]) -> datetime | None:
    # ssl.getpeercert() returns e.g. "Feb  6 12:00:00 2026 GMT"
    s = cert.get("notAfter")
    if not isinstance(s, str) or not s.strip():
        return None
    try:
        dt = datetime.strptime(s.strip(), "%b %d %H:%M:%S %Y %Z")
    except ValueError:
        return None
    return dt.replace(tzinfo=timezone.utc)


def _der_not_after(der: bytes) -> datetime | None:
    # Without verification getpeercert() is empty; the DER form is still available.
    try:
        return x509.load_der_x509_certificate(der).not_valid_after_utc
    except ValueError:
        return None


def _ssl_context(client: ClientSettings) -> ssl.SSLContext:
    ctx = ssl.create_default_context()
    if client.insecure:
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
    return ctx


async def _tls_handshake(host: str, port: int, client: ClientSettings) -> float | None:
    """
    Open a TLS connection and return the seconds left before the peer certificate expires.
    """
    reader, writer = await asyncio.wait_for(
        asyncio.open_connection(host=host, port=port, ssl=_ssl_context(client), server_hostname=host),
        timeout=client.timeout,
    )
    try:
        sslobj = writer.get_extra_info("ssl_object")
        if sslobj is None:
            return None
        cert = sslobj.getpeercert()
        not_after = _parse_cert_not_after(cert) if cert else None
        if not_after is None:
            der = sslobj.getpeercert(binary_form=True)
            not_after = _der_not_after(der) if der else None
        if not_after is None:
            return None
        return (not_after - datetime.now(timezone.utc)).total_seconds()
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except (OSError, ssl.SSLError):
            pass


async def _resolve_ip(host: str) -> str | None:
    infos = await asyncio.get_running_loop().getaddrinfo(host, None, type=socket.SOCK_STREAM)
    for _family, _type, _proto, _canon, sockaddr in infos:
        return str(sockaddr[0])
    return None


async def check_http(target: Target) -> RawCheckResult:
    client_cfg = target.client
    parts = urlsplit(target.url)
    hostname = parts.hostname or ""
    raw = RawCheckResult(hostname=hostname)

    if target.uses_placeholder(_IP_PLACEHOLDER):
        try:
            raw.ip = await _resolve_ip(hostname)
        except OSError as exc:
            raw.error = f"dns_error: {_error_text(exc)}"
            return raw

    started = time.perf_counter()
    try:
        async with httpx.AsyncClient(
            verify=not client_cfg.insecure,
            proxy=client_cfg.proxy or None,
            timeout=client_cfg.timeout,
            follow_redirects=True,
        ) as client:
            resp = await client.request(
                target.method,
                target.url,
                content=target.body.encode("utf-8") if target.body else None,
                headers=dict(target.headers),
            )
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        raw.duration = _elapsed(started)
        raw.error = f"http_error: {_error_text(exc)}"
        return raw

    raw.duration = _elapsed(started)
    raw.connected = True
    raw.status = resp.status_code
    raw.body = resp.content

    if (parts.scheme or "").lower() == "https" and target.uses_placeholder(_CERTIFICATE_PLACEHOLDER):
        try:
            raw.certificate_expiration = await _tls_handshake(hostname, parts.port or 443, client_cfg)
        except (OSError, ssl.SSLError, asyncio.TimeoutError) as exc:
            # The HTTP request itself succeeded; [CERTIFICATE_EXPIRATION] resolves to 0 and fails its condition.
            logger.warning("Failed to read peer certificate", target=target.key, error=_error_text(exc))
    return raw


async def check_tcp(target: Target) -> RawCheckResult:
    raw = RawCheckResult()
    started = time.perf_counter()
    try:
        host, port = _host_port(target.url)
        raw.hostname = host
        if port is None:
            raise ValueError(f"Missing port in {target.url!r}")
        _reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host=host, port=port),
            timeout=target.client.timeout,
        )
    except (OSError, ValueError, asyncio.TimeoutError) as exc:
        raw.duration = _elapsed(started)
        raw.error = f"tcp_error: {_error_text(exc)}"
        return raw

    raw.duration = _elapsed(started)
    raw.connected = True
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return raw


async def check_tls(target: Target) -> RawCheckResult:
    raw = RawCheckResult()
    started = time.perf_counter()
    try:
        host, port = _host_port(target.url, default_port=443)
        raw.hostname = host
        raw.certificate_expiration = await _tls_handshake(host, int(port or 443), target.client)
    except (OSError, ValueError, ssl.SSLError, asyncio.TimeoutError) as exc:
        raw.duration = _elapsed(started)
        raw.error = f"tls_error: {_error_text(exc)}"
        return raw

    raw.duration = _elapsed(started)
    raw.connected = True
    return raw


async def check_icmp(target: Target) -> RawCheckResult:
    raw = RawCheckResult()
    started = time.perf_counter()
    try:
        host, _port = _host_port(target.url)
        raw.hostname = host
        wait_seconds = max(1, int(round(target.client.timeout)))
        proc = await asyncio.create_subprocess_exec(
            "ping",
            "-c",
            "1",
            "-W",
            str(wait_seconds),
            host,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=target.client.timeout + 1.0)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
    except (OSError, ValueError, asyncio.TimeoutError) as exc:
        raw.duration = _elapsed(started)
        raw.error = f"icmp_error: {_error_text(exc)}"
        return raw

    raw.duration = _elapsed(started)
    if proc.returncode != 0:
        detail = (stderr or b"").decode("utf-8", errors="replace").strip()
        raw.error = f"icmp_error: ping exited with {proc.returncode}" + (f": {detail[:200]}" if detail else "")
        return raw
    raw.connected = True
    return raw


def _dns_query_sync(
    *,
    query_name: str,
    query_type: str,
    nameserver: str,
    port: int,
    timeout_seconds: float,
) -> tuple[str, list[str]]:
    # dnspython is imported lazily to keep startup fast when no DNS targets are configured.
    import dns.message  # type: ignore
    import dns.query  # type: ignore
    import dns.rcode  # type: ignore
    import dns.rdatatype  # type: ignore

    name = query_name if query_name.endswith(".") else f"{query_name}."
    query = dns.message.make_query(name, dns.rdatatype.from_text(query_type))
    response = dns.query.udp(query, nameserver, timeout=max(0.5, float(timeout_seconds)), port=port)

    answers: list[str] = []
    for rrset in response.answer:
        for rr in rrset:
            if rrset.rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA):
                answers.append(str(rr.address))
            elif rrset.rdtype == dns.rdatatype.MX:
                answers.append(str(rr.exchange))
            elif rrset.rdtype == dns.rdatatype.TXT:
                answers.append(b"".join(rr.strings).decode("utf-8", errors="replace"))
            else:
                answers.append(str(rr.to_text()))
    return dns.rcode.to_text(response.rcode()), answers


async def check_dns(target: Target) -> RawCheckResult:
    raw = RawCheckResult()
    if target.dns is None:
        raw.error = "dns_error: missing dns query settings"
        return raw
    started = time.perf_counter()
    try:
        nameserver, port = _host_port(target.url, default_port=53)
        raw.hostname = nameserver
        rcode, answers = await asyncio.to_thread(
            _dns_query_sync,
            query_name=target.dns.query_name,
            query_type=target.dns.query_type,
            nameserver=nameserver,
            port=int(port or 53),
            timeout_seconds=target.client.timeout,
        )
    except Exception as exc:
        raw.duration = _elapsed(started)
        raw.error = f"dns_error: {_error_text(exc)}"
        return raw

    raw.duration = _elapsed(started)
    raw.connected = True
    raw.dns_rcode = rcode
    raw.dns_answers = tuple(answers)
    if answers:
        raw.body = answers[0].encode("utf-8")
        if target.dns.query_type.upper() in {"A", "AAAA"}:
            raw.ip = answers[0]
    return raw


_EXECUTORS = {
    ProbeKind.HTTP: check_http,
    ProbeKind.TCP: check_tcp,
    ProbeKind.TLS: check_tls,
    ProbeKind.ICMP: check_icmp,
    ProbeKind.DNS: check_dns,
}


async def execute_check(target: Target) -> RawCheckResult:
    try:
        executor = _EXECUTORS[target.probe_kind]
    except ValueError as exc:
        return RawCheckResult(error=_error_text(exc))
    raw = await executor(target)
    if raw.error:
        logger.debug("Check executor reported an error", target=target.key, error=raw.error)
    return raw
