import functools
import json
import logging
from typing import Optional

from vidrelay.config.settings import config
from vidrelay.core.errors import UpstreamFailure, ValidationFailed
from vidrelay.core.policy import is_absolute_url, is_allowed_source, normalize_url
from vidrelay.i18n import i18n
from vidrelay.infra.redis import get_redis
from vidrelay.models.internal import VideoInfo
from vidrelay.models.request import ResolveRequest
from vidrelay.models.response import ResolveResponse
from vidrelay.services.extractor import Extractor, ExtractorError
from vidrelay.utils.filename import build_download_filename
from vidrelay.utils.hash import hash_stable

logger = logging.getLogger(__name__)


def clean_source_url(url: Optional[str], locale: str) -> str:
    """
    Normalize a submitted page URL and enforce the source allow-list.
    normalize_url passes malformed input through unchanged, so the checks
    here are what reject it.
    """
    _ = functools.partial(i18n.get, locale=locale)

    if not url or not url.strip():
        raise ValidationFailed(_("error.missing_url"))

    url = url.strip()
    if not is_absolute_url(url):
        raise ValidationFailed(_("error.invalid_url"))

    cleaned = normalize_url(url)
    if not is_allowed_source(cleaned):
        raise ValidationFailed(_("error.unsupported_source"))
    return cleaned


class ResolveService:
    """Probe a source URL and describe the download the browser will request"""

    @staticmethod
    async def _cached_info(cache_key: str) -> Optional[VideoInfo]:
        redis = get_redis()
        if not redis:
            return None
        try:
            cached = await redis.get(cache_key)
            if cached:
                return VideoInfo(**json.loads(cached))
        except Exception as e:
            logger.warning(f"Probe cache read failed: {e}")
        return None

    @staticmethod
    async def _store_info(cache_key: str, info: VideoInfo) -> None:
        redis = get_redis()
        if not redis:
            return
        try:
            await redis.setex(cache_key, config.redis.probe_cache_ttl, info.model_dump_json())
        except Exception as e:
            logger.warning(f"Probe cache write failed: {e}")

    @staticmethod
    async def resolve(payload: ResolveRequest, extractor: Extractor, locale: str) -> ResolveResponse:
        _ = functools.partial(i18n.get, locale=locale)

        cleaned_url = clean_source_url(payload.url, locale)
        request = payload.to_download_request(cleaned_url)

        cache_key = f"probe:{hash_stable(cleaned_url)}"
        info = await ResolveService._cached_info(cache_key)

        if info is None:
            try:
                info = await extractor.probe(request.source_url)
            except ExtractorError as e:
                logger.error(f"Probe failed ({e.outcome.value}): {e.message}")
                raise UpstreamFailure(_("error.probe_failed"), status_code=400)
            await ResolveService._store_info(cache_key, info)

        filename = build_download_filename(info.title, request.audio_only)

        return ResolveResponse(
            filename=filename,
            title=info.title,
            duration=info.duration_seconds,
            cleaned_url=cleaned_url,
            original_url=payload.url,
            audio_only=request.audio_only,
        )
