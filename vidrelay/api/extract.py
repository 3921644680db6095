import asyncio
import functools
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response

from vidrelay.core.errors import InternalFailure, UpstreamFailure
from vidrelay.core.logging import log_error, log_info
from vidrelay.i18n import i18n
from vidrelay.models.internal import LocalTempFile
from vidrelay.services.extractor import Extractor, ExtractorError, InvocationOutcome, get_extractor
from vidrelay.services.relay import RelayError, RelayResponse, open_stream, remove_file
from vidrelay.services.resolve import clean_source_url
from vidrelay.utils.locale import get_locale, safe_url_for_log

router = APIRouter()

DISCONNECT_POLL_SECONDS = 1.0

# nginx convention for "client closed request"
CLIENT_CLOSED_REQUEST = 499


class ClientDisconnected(Exception):
    pass


async def download_while_connected(
    request: Request,
    extractor: Extractor,
    url: str,
    audio_only: bool,
) -> LocalTempFile:
    """
    Run the extractor download, cancelling it as soon as the client goes away.
    Cancellation makes the extractor stop yt-dlp and remove partial files.
    """
    download = asyncio.ensure_future(extractor.download(url, audio_only))
    try:
        while True:
            done, _ = await asyncio.wait({download}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return download.result()
            if await request.is_disconnected():
                break
    finally:
        if not download.done():
            download.cancel()

    log_info(request, i18n.get("log.client_gone"))
    (outcome,) = await asyncio.gather(download, return_exceptions=True)
    # The download may have finished in the same instant it was cancelled
    if isinstance(outcome, LocalTempFile):
        remove_file(outcome.path)
    raise ClientDisconnected()


@router.get("/extract-stream")
async def extract_stream(
    request: Request,
    url: Optional[str] = Query(None),
    filename: Optional[str] = Query(None),
    audio_only: bool = Query(False, alias="audioOnly"),
    extractor: Extractor = Depends(get_extractor),
):
    """Download with yt-dlp into a temp file, then stream the file to the browser"""

    locale = get_locale(request.headers.get("accept-language"))
    _ = functools.partial(i18n.get, locale=locale)
    filename = filename or ("audio.mp3" if audio_only else "video.mp4")

    cleaned_url = clean_source_url(url, locale)
    log_info(request, _("log.extracting", url=safe_url_for_log(cleaned_url)))

    try:
        target = await download_while_connected(request, extractor, cleaned_url, audio_only)
    except ClientDisconnected:
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    except ExtractorError as e:
        log_error(request, f"Extraction failed ({e.outcome.value}): {e.message}")
        if e.outcome == InvocationOutcome.FAILED_TIMEOUT:
            raise UpstreamFailure(_("error.download_timeout"))
        raise UpstreamFailure(e.message or _("error.download_failed"))

    try:
        stream = await open_stream(target)
    except RelayError as e:
        log_error(request, f"Stream setup failed: {e.message}")
        raise InternalFailure(_("error.stream_failed"))

    log_info(request, f"Streaming {filename} ({target.size_bytes / 1024 / 1024:.1f} MB)")
    return RelayResponse(stream, filename)
