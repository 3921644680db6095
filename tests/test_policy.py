import socket

import pytest

from vidrelay.config.settings import config
from vidrelay.core import policy
from vidrelay.core.policy import (
    UrlValidationResult,
    is_allowed_relay_target,
    is_allowed_source,
    is_private_or_local_target,
    normalize_url,
    validate_relay_target,
)


class TestNormalizeUrl:
    def test_strips_tracking_query(self):
        url = "https://x.com/someone/status/1234567890?s=20&t=abcdef#reply"
        assert normalize_url(url) == "https://x.com/someone/status/1234567890"

    def test_strips_subdomain_of_tracking_platform(self):
        url = "https://www.xiaohongshu.com/explore/65a1b2c3?xsec_token=XYZ&xsec_source=pc_feed"
        assert normalize_url(url) == "https://www.xiaohongshu.com/explore/65a1b2c3"

    def test_keeps_query_elsewhere(self):
        url = "https://www.youtube.com/watch?v=dQw4w9WgXcQ&t=42"
        assert normalize_url(url) == url

    def test_drops_userinfo_keeps_port(self):
        assert normalize_url("https://user:pw@x.com:8443/a?b=1") == "https://x.com:8443/a"

    def test_unparseable_input_passes_through(self):
        assert normalize_url("not a url") == "not a url"
        assert normalize_url("http://[::1") == "http://[::1"

    def test_idempotent(self):
        once = normalize_url("https://twitter.com/a/status/1?s=19")
        assert normalize_url(once) == once


class TestAllowLists:
    @pytest.mark.parametrize("url", [
        "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
        "https://youtu.be/dQw4w9WgXcQ",
        "https://m.youtube.com/shorts/abc",
        "https://x.com/a/status/1",
    ])
    def test_allowed_sources(self, url):
        assert is_allowed_source(url)

    @pytest.mark.parametrize("url", [
        "https://notyoutube.com/watch",
        "https://youtube.com.evil.example/watch",
        "ftp://youtube.com/file",
        "youtube.com/watch?v=1",
        "",
    ])
    def test_rejected_sources(self, url):
        assert not is_allowed_source(url)

    def test_relay_targets(self):
        assert is_allowed_relay_target("https://rr3---sn-abc.googlevideo.com/videoplayback?expire=1")
        assert is_allowed_relay_target("https://video.twimg.com/ext_tw_video/1/vid.mp4")
        assert not is_allowed_relay_target("https://example.com/video.mp4")
        assert not is_allowed_relay_target("https://www.youtube.com/watch?v=1")


class TestPrivateTargets:
    @pytest.mark.parametrize("url", [
        "http://127.0.0.1/",
        "http://localhost:8000/admin",
        "http://api.localhost/",
        "http://10.0.0.5/",
        "http://172.16.3.4/",
        "http://192.168.1.1/",
        "http://169.254.169.254/latest/meta-data/",
        "http://0.0.0.0/",
        "http://[::1]/",
        "http://[fe80::1]/",
        "http://[fd00::1]/",
        "http://[::ffff:127.0.0.1]/",
        "http://2130706433/",
        "http://127.1/",
        "http://0x7f000001/",
        "not a url",
    ])
    def test_private(self, url):
        assert is_private_or_local_target(url)

    @pytest.mark.parametrize("url", [
        "https://rr1.googlevideo.com/videoplayback",
        "https://8.8.8.8/",
        "http://[2606:4700:4700::1111]/",
    ])
    def test_public(self, url):
        assert not is_private_or_local_target(url)


class TestValidateRelayTarget:
    @pytest.mark.asyncio
    async def test_ok(self):
        result = await validate_relay_target("https://rr1.googlevideo.com/videoplayback?id=1")
        assert result == UrlValidationResult.OK

    @pytest.mark.asyncio
    async def test_invalid(self):
        assert await validate_relay_target("not a url") == UrlValidationResult.INVALID
        assert await validate_relay_target("file:///etc/passwd") == UrlValidationResult.INVALID

    @pytest.mark.asyncio
    async def test_blocked(self):
        assert await validate_relay_target("http://127.0.0.1:9000/") == UrlValidationResult.BLOCKED
        assert await validate_relay_target("https://example.com/a.mp4") == UrlValidationResult.BLOCKED

    @pytest.mark.asyncio
    async def test_trusted_host(self, monkeypatch):
        monkeypatch.setattr(config.security, "trusted_relay_hosts", ["cobalt-api"])
        result = await validate_relay_target("http://cobalt-api:9000/tunnel?id=abc")
        assert result == UrlValidationResult.OK

    @pytest.mark.asyncio
    async def test_dns_pointing_inside(self, monkeypatch):
        monkeypatch.setattr(config.security, "resolve_dns", True)

        def fake_getaddrinfo(host, port, *args, **kwargs):
            return [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("10.1.2.3", 0))]

        monkeypatch.setattr(policy.socket, "getaddrinfo", fake_getaddrinfo)
        result = await validate_relay_target("https://rr1.googlevideo.com/videoplayback")
        assert result == UrlValidationResult.BLOCKED

    @pytest.mark.asyncio
    async def test_dns_failure_is_not_blocked(self, monkeypatch):
        monkeypatch.setattr(config.security, "resolve_dns", True)

        def failing_getaddrinfo(host, port, *args, **kwargs):
            raise socket.gaierror("no such host")

        monkeypatch.setattr(policy.socket, "getaddrinfo", failing_getaddrinfo)
        result = await validate_relay_target("https://rr1.googlevideo.com/videoplayback")
        assert result == UrlValidationResult.OK
