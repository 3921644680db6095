import functools

from fastapi import APIRouter, Depends, Request

from vidrelay.core.errors import AppError, InternalFailure
from vidrelay.core.logging import log_error, log_info
from vidrelay.i18n import i18n
from vidrelay.infra.rate_limit import rate_limiter
from vidrelay.models.request import ResolveRequest
from vidrelay.models.response import ResolveResponse
from vidrelay.services.extractor import Extractor, get_extractor
from vidrelay.services.resolve import ResolveService
from vidrelay.utils.locale import get_locale, safe_url_for_log

router = APIRouter()


@router.post("/resolve", response_model=ResolveResponse, dependencies=[Depends(rate_limiter)])
async def resolve_video(
    request: Request,
    payload: ResolveRequest,
    extractor: Extractor = Depends(get_extractor),
):
    """Probe a video URL and return the filename and metadata for the download"""

    locale = get_locale(request.headers.get("accept-language"))
    _ = functools.partial(i18n.get, locale=locale)

    if payload.url:
        log_info(request, _("log.resolving", url=safe_url_for_log(payload.url)))

    try:
        result = await ResolveService.resolve(payload, extractor, locale)
        log_info(request, _("log.resolved", title=result.title))
        return result
    except AppError:
        raise
    except Exception as e:
        log_error(request, f"Resolve error: {str(e)}")
        raise InternalFailure(_("error.server_error"))
