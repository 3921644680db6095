import functools
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, Query, Request

from vidrelay.core.errors import Forbidden, InternalFailure, UpstreamFailure, ValidationFailed
from vidrelay.core.logging import log_error, log_info, log_warning
from vidrelay.core.policy import UrlValidationResult, validate_relay_target
from vidrelay.core.state import state
from vidrelay.i18n import i18n
from vidrelay.models.internal import RemoteTunnel
from vidrelay.services.relay import RedirectRefused, RelayError, RelayResponse, build_http_client, open_stream
from vidrelay.utils.locale import get_locale, safe_url_for_log

router = APIRouter()

DEFAULT_FILENAME = "download.mp4"


def get_http_client() -> httpx.AsyncClient:
    """Shared upstream client, created on first use"""
    if state.http_client is None:
        state.http_client = build_http_client()
    return state.http_client


@router.get("/relay")
async def relay(
    request: Request,
    url: Optional[str] = Query(None),
    filename: Optional[str] = Query(None),
    client: httpx.AsyncClient = Depends(get_http_client),
):
    """Stream a tunnel URL from an allow-listed CDN to the browser as a download"""

    locale = get_locale(request.headers.get("accept-language"))
    _ = functools.partial(i18n.get, locale=locale)
    filename = filename or DEFAULT_FILENAME

    if not url:
        log_warning(request, "Relay request without url")
        raise ValidationFailed(_("error.missing_url"))

    validation_result = await validate_relay_target(url)
    if validation_result == UrlValidationResult.INVALID:
        raise ValidationFailed(_("error.invalid_url"))
    if validation_result == UrlValidationResult.BLOCKED:
        log_warning(request, f"Relay target refused: {safe_url_for_log(url)}")
        raise Forbidden(_("error.relay_not_allowed"))

    log_info(request, _("log.relaying", url=safe_url_for_log(url)))

    try:
        stream = await open_stream(RemoteTunnel(url=url), client, request.headers.get("range"))
    except RedirectRefused as e:
        log_warning(request, f"Relay refused: {e.message}")
        raise Forbidden(_("error.private_target"))
    except RelayError as e:
        log_error(request, f"Relay failed: {e.message}")
        raise UpstreamFailure(_("error.download_failed"), status_code=e.status_code)
    except httpx.HTTPError as e:
        log_error(request, f"Proxy request error: {str(e)}")
        raise InternalFailure(_("error.proxy_failed"))

    return RelayResponse(stream, filename)
