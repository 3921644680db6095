"""End-to-end smoke test of the upstream resolver and of this service.

Usage:
    vidrelay-diagnose [--app-url URL] [--resolver-url URL] [--video URL] [--skip-extract]
"""
import argparse
import sys
import time
from typing import Callable, List, Optional, Tuple
from urllib.parse import urlencode

import httpx
from rich.console import Console
from rich.table import Table

from vidrelay.config.settings import config

TEST_VIDEO_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
PROBE_BYTES = 64 * 1024
EXTRACT_READ_SECONDS = 10.0

console = Console()


def looks_like_media(data: bytes) -> Optional[str]:
    """Container name if the first bytes carry a known signature"""
    if len(data) >= 8 and data[4:8] == b"ftyp":
        return "MP4"
    if data[:4] == b"\x1a\x45\xdf\xa3":
        return "WebM"
    if data[:3] == b"ID3" or (len(data) >= 2 and data[0] == 0xFF and data[1] & 0xE0 == 0xE0):
        return "MP3"
    return None


def hexdump(data: bytes, limit: int = 64) -> str:
    lines = []
    chunk = data[:limit]
    for offset in range(0, len(chunk), 16):
        row = chunk[offset:offset + 16]
        hex_part = " ".join(f"{b:02x}" for b in row)
        ascii_part = "".join(chr(b) if 32 <= b <= 126 else "." for b in row)
        lines.append(f"{hex_part:<48} | {ascii_part}")
    return "\n".join(lines)


def read_sample(resp: httpx.Response, limit: int = PROBE_BYTES) -> bytes:
    """First bytes of a streamed body; a server ignoring Range is never read to the end"""
    data = b""
    for chunk in resp.iter_bytes():
        data += chunk
        if len(data) >= limit:
            break
    return data[:limit]


class Diagnosis:
    def __init__(self, app_url: str, resolver_url: str, video_url: str):
        self.app_url = app_url.rstrip("/")
        self.resolver_url = resolver_url.rstrip("/")
        self.video_url = video_url
        self.client = httpx.Client(timeout=30.0, follow_redirects=True)
        self.results: List[Tuple[str, bool, str]] = []
        self.tunnel_url: Optional[str] = None
        self.filename: Optional[str] = None

    def record(self, name: str, passed: bool, detail: str = "", suggestion: str = "") -> bool:
        mark = "[green]✓ PASS[/green]" if passed else "[red]✗ FAIL[/red]"
        console.print(f"{mark} {name}")
        if detail:
            console.print(f"  [dim]{detail}[/dim]")
        if suggestion and not passed:
            console.print(f"  [yellow]→ {suggestion}[/yellow]")
        self.results.append((name, passed, detail))
        return passed

    def check_resolver(self) -> bool:
        console.rule("Resolver connectivity")
        try:
            resp = self.client.post(
                f"{self.resolver_url}/",
                json={"url": "https://example.com"},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            return self.record("Resolver reachable", False, str(e), "Start the resolver container")
        return self.record(
            "Resolver reachable",
            resp.is_success or resp.status_code == 400,
            f"status {resp.status_code}",
            "Check the resolver logs",
        )

    def fetch_tunnel(self) -> bool:
        console.rule("Tunnel URL")
        try:
            resp = self.client.post(
                f"{self.resolver_url}/",
                json={"url": self.video_url, "downloadMode": "auto", "filenameStyle": "basic"},
                headers={"Accept": "application/json"},
            )
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            return self.record("Tunnel URL issued", False, str(e))

        if data.get("status") not in ("tunnel", "redirect"):
            return self.record("Tunnel URL issued", False, f"resolver status {data.get('status')}")
        self.tunnel_url = data.get("url")
        self.filename = data.get("filename") or "download.mp4"
        return self.record("Tunnel URL issued", bool(self.tunnel_url), f"{self.filename}")

    def check_tunnel_stream(self) -> bool:
        console.rule("Tunnel stream")
        if not self.tunnel_url:
            return self.record("Tunnel stream", False, "no tunnel URL")
        try:
            with self.client.stream("GET", self.tunnel_url, headers={"Range": f"bytes=0-{PROBE_BYTES - 1}"}) as resp:
                data = read_sample(resp)
                headers = resp.headers
        except httpx.HTTPError as e:
            return self.record("Tunnel stream", False, str(e))

        for name in ("content-type", "content-length", "estimated-content-length", "content-disposition"):
            console.print(f"  [dim]{name}: {headers.get(name, '(unset)')}[/dim]")
        container = looks_like_media(data)
        if not container:
            console.print(hexdump(data))
        return self.record("Tunnel stream carries media", container is not None, container or "unknown signature")

    def check_relay(self) -> bool:
        console.rule("Relay endpoint")
        if not self.tunnel_url:
            return self.record("Relay endpoint", False, "no tunnel URL")
        query = urlencode({"url": self.tunnel_url, "filename": self.filename})
        try:
            with self.client.stream("GET", f"{self.app_url}/relay?{query}") as resp:
                first = read_sample(resp)
                status = resp.status_code
                disposition = resp.headers.get("content-disposition", "")
        except httpx.HTTPError as e:
            return self.record("Relay endpoint", False, str(e))

        ok = status in (200, 206) and disposition.startswith("attachment")
        return self.record(
            "Relay endpoint",
            ok and looks_like_media(first) is not None,
            f"status {status}, {disposition[:60]}",
            "A 403 means the tunnel host is missing from policy.allowed_relay_domains "
            "or security.trusted_relay_hosts",
        )

    def check_resolve(self) -> Optional[dict]:
        console.rule("Resolve endpoint")
        try:
            resp = self.client.post(f"{self.app_url}/resolve", json={"url": self.video_url, "audioOnly": False})
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            self.record("Resolve endpoint", False, str(e))
            return None
        ok = resp.status_code == 200 and data.get("status") == "ready"
        self.record("Resolve endpoint", ok, data.get("filename") or data.get("error", ""))
        return data if ok else None

    def check_extract(self, resolved: dict) -> bool:
        console.rule("Extract-stream endpoint")
        query = urlencode({"url": resolved["cleanedUrl"], "filename": resolved["filename"], "audioOnly": "false"})
        started = time.monotonic()
        received = 0
        try:
            with self.client.stream("GET", f"{self.app_url}/extract-stream?{query}", timeout=None) as resp:
                status = resp.status_code
                for chunk in resp.iter_bytes():
                    received += len(chunk)
                    if time.monotonic() - started > EXTRACT_READ_SECONDS:
                        break
        except httpx.HTTPError as e:
            return self.record("Extract-stream endpoint", False, str(e))
        elapsed = time.monotonic() - started
        return self.record(
            "Extract-stream endpoint",
            status == 200 and received > 0,
            f"status {status}, {received / 1024 / 1024:.1f} MB in {elapsed:.1f}s",
        )

    def summary(self) -> bool:
        table = Table(title="Summary")
        table.add_column("Check")
        table.add_column("Result")
        for name, passed, _ in self.results:
            table.add_row(name, "[green]PASS[/green]" if passed else "[red]FAIL[/red]")
        console.print(table)
        return all(passed for _, passed, _ in self.results)

    def run(self, skip_extract: bool = False) -> bool:
        steps: List[Callable[[], bool]] = [self.check_resolver, self.fetch_tunnel, self.check_tunnel_stream, self.check_relay]
        try:
            for step in steps:
                step()
            resolved = self.check_resolve()
            if resolved and not skip_extract:
                self.check_extract(resolved)
        finally:
            self.client.close()
        return self.summary()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Diagnose the download pipeline end to end")
    parser.add_argument("--app-url", default=config.resolver.app_url)
    parser.add_argument("--resolver-url", default=config.resolver.api_url)
    parser.add_argument("--video", default=TEST_VIDEO_URL)
    parser.add_argument("--skip-extract", action="store_true", help="Do not run a full yt-dlp download")
    args = parser.parse_args(argv)

    diagnosis = Diagnosis(args.app_url, args.resolver_url, args.video)
    return 0 if diagnosis.run(skip_extract=args.skip_extract) else 1


if __name__ == "__main__":
    sys.exit(main())
