import httpx

from vidrelay.diagnose import Diagnosis, hexdump, looks_like_media, read_sample

RESOLVER = "http://resolver.test"
APP = "http://app.test"


def test_media_signatures():
    assert looks_like_media(b"\x00\x00\x00\x18ftypmp42rest") == "MP4"
    assert looks_like_media(b"\x1a\x45\xdf\xa3\x01\x00") == "WebM"
    assert looks_like_media(b"ID3\x04\x00") == "MP3"
    assert looks_like_media(b"<html><body>") is None
    assert looks_like_media(b"") is None


def test_hexdump():
    dump = hexdump(b"ftyp" + b"\x00" * 20)
    lines = dump.splitlines()
    assert len(lines) == 2
    assert lines[0].startswith("66 74 79 70 00")
    assert lines[0].endswith("| ftyp............")


def test_read_sample_stops_early():
    served = []

    def body():
        for i in range(1000):
            served.append(i)
            yield b"\x00" * 1024

    resp = httpx.Response(200, content=body())
    data = read_sample(resp, limit=4096)

    assert len(data) == 4096
    assert len(served) == 4
    resp.close()


def make_diagnosis(handler) -> Diagnosis:
    diagnosis = Diagnosis(APP, RESOLVER, "https://www.youtube.com/watch?v=dQw4w9WgXcQ")
    diagnosis.client.close()
    diagnosis.client = httpx.Client(transport=httpx.MockTransport(handler), follow_redirects=True)
    return diagnosis


def test_tunnel_then_relay():
    media = b"\x00\x00\x00\x18ftypisom" + b"\x00" * 64

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "resolver.test":
            return httpx.Response(200, json={
                "status": "tunnel",
                "url": "http://resolver.test/tunnel?id=1",
                "filename": "clip.mp4",
            }) if request.method == "POST" else httpx.Response(206, content=media)
        if request.url.path == "/relay":
            assert request.url.params["url"] == "http://resolver.test/tunnel?id=1"
            return httpx.Response(200, headers={"Content-Disposition": 'attachment; filename="clip.mp4"'}, content=media)
        return httpx.Response(404)

    diagnosis = make_diagnosis(handler)
    assert diagnosis.check_resolver()
    assert diagnosis.fetch_tunnel()
    assert diagnosis.filename == "clip.mp4"
    assert diagnosis.check_tunnel_stream()
    assert diagnosis.check_relay()
    assert diagnosis.summary()


def test_unreachable_resolver_fails():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    diagnosis = make_diagnosis(handler)
    assert not diagnosis.check_resolver()
    assert not diagnosis.fetch_tunnel()
    assert not diagnosis.check_relay()
    assert not diagnosis.summary()
