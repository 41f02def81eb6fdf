"""POI cache maintenance: refresh from the provider, statistics, freshness report.

Refresh is the only path that always calls the provider. Keywords are
fetched one after another through the provider's shared rate limiter and
each keyword is upserted as soon as it completes, so a later failure keeps
earlier progress.
"""

import logging
from collections import defaultdict
from typing import Callable

import config
from db import PoiStore, TtlPolicy, now_epoch
from errors import SYSTEMIC_ERRORS, ProviderKeyMissing, ValidationError, to_provider_error
from keywords import normalize_keywords
from models import (
    AgeBucket,
    CacheDistribution,
    CacheStatsResult,
    KeywordFetch,
    KeywordFreshness,
    KeywordStatModel,
    RefreshProgress,
    RefreshResult,
)
from poi_source import to_record
from provider import PoiProvider, has_usable_api_key

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[RefreshProgress], None]

STALE_AFTER_HOURS = 7 * 24


class PoiCacheService:
    def __init__(
        self,
        store: PoiStore,
        provider: PoiProvider,
        *,
        api_key: str = config.AMAP_API_KEY,
        ttl_seconds: int = config.CACHE_TTL_SECONDS,
    ):
        self.store = store
        self.provider = provider
        self.api_key = api_key
        self.ttl_seconds = ttl_seconds

    async def refresh(
        self,
        city: str,
        keywords: list[str],
        on_progress: ProgressCallback | None = None,
    ) -> RefreshResult:
        city = (city or "").strip()
        normalized = normalize_keywords(keywords)
        if not city:
            raise ValidationError("city is required")
        if not normalized:
            raise ValidationError("At least one keyword is required")
        if not has_usable_api_key(self.api_key):
            raise ProviderKeyMissing("Map provider API key is not configured.")

        total = len(normalized)
        logger.info("Refreshing POI cache city=%s keywords=%s", city, normalized)

        results: list[KeywordFetch] = []
        errors = 0
        for index, keyword in enumerate(normalized, start=1):
            try:
                pois = await self.provider.search_by_keyword(keyword, city)
                fetched_at = now_epoch()
                records = [to_record(p, keyword, city, fetched_at) for p in pois]
                self.store.upsert(records)
            except Exception as exc:
                errors += 1
                error = to_provider_error(exc)
                logger.error(
                    "POI fetch failed city=%s keyword=%s (%d/%d): %r", city, keyword, index, total, exc,
                )
                results.append(KeywordFetch(keyword=keyword, fetched=0, error=error.code))
                self._report(on_progress, keyword, 0, index, total, error.code)
                if isinstance(error, SYSTEMIC_ERRORS):
                    raise error from exc
                continue

            results.append(KeywordFetch(keyword=keyword, fetched=len(records)))
            logger.info("POI fetch ok city=%s keyword=%s fetched=%d (%d/%d)", city, keyword, len(records), index, total)
            self._report(on_progress, keyword, len(records), index, total)

        total_fetched = sum(r.fetched for r in results)
        logger.info(
            "POI cache refresh done city=%s keywords=%d failed=%d fetched=%d", city, total, errors, total_fetched,
        )
        return RefreshResult(
            city=city,
            keywords=normalized,
            total_fetched=total_fetched,
            generated_at=now_epoch(),
            results=results,
        )

    @staticmethod
    def _report(
        on_progress: ProgressCallback | None,
        keyword: str,
        fetched: int,
        index: int,
        total: int,
        error: str | None = None,
    ) -> None:
        if on_progress is not None:
            on_progress(RefreshProgress(keyword=keyword, fetched=fetched, index=index, total=total, error=error))

    def stats(self, city: str | None = None, ttl_policy: TtlPolicy = TtlPolicy.unbounded()) -> CacheStatsResult:
        rows = self.store.keyword_stats(city, ttl_policy.max_age_seconds)
        return CacheStatsResult(
            city=city or None,
            stats=[KeywordStatModel(**vars(r)) for r in rows],
            total=sum(r.count for r in rows),
            generated_at=now_epoch(),
            use_ttl=ttl_policy.is_bounded,
        )

    def distribution(self, city: str | None = None) -> CacheDistribution:
        """Valid vs expired rows under the configured TTL, per keyword and by age."""
        records = self.store.get_all(city)
        now = now_epoch()
        cutoff = now - self.ttl_seconds

        per_keyword: dict[str, list[int]] = defaultdict(lambda: [0, 0])
        by_age: dict[int, int] = defaultdict(int)
        valid = 0
        for r in records:
            fresh = r.fetched_at >= cutoff
            valid += fresh
            per_keyword[r.keyword][0 if fresh else 1] += 1
            age_hours = max(0, now - r.fetched_at) // 3600
            by_age[(age_hours // 24) * 24] += 1

        keyword_distribution = sorted(
            (
                KeywordFreshness(keyword=kw, total=v + e, valid=v, expired=e)
                for kw, (v, e) in per_keyword.items()
            ),
            key=lambda k: k.total,
            reverse=True,
        )
        age_distribution = [AgeBucket(age_hours=h, count=n) for h, n in sorted(by_age.items())]
        expired = len(records) - valid

        return CacheDistribution(
            city=city or None,
            generated_at=now,
            ttl_seconds=self.ttl_seconds,
            total_records=len(records),
            valid_records=valid,
            expired_records=expired,
            keyword_distribution=keyword_distribution,
            age_distribution=age_distribution,
            recommendations=recommendations(len(records), expired, keyword_distribution, age_distribution),
        )


def recommendations(
    total: int,
    expired: int,
    keywords: list[KeywordFreshness],
    ages: list[AgeBucket],
) -> list[str]:
    tips: list[str] = []
    if expired > 0 and total > 0:
        tips.append(f"{expired / total * 100:.1f}% of cached POIs are past the TTL; consider refreshing the cache")
    if any(a.age_hours > STALE_AFTER_HOURS for a in ages):
        tips.append("Some POIs are older than 7 days; consider a longer TTL or a scheduled refresh")
    fully_expired = [k.keyword for k in keywords if k.valid == 0]
    if fully_expired:
        tips.append(f"All cached POIs for {', '.join(fully_expired)} are expired and should be fetched again")
    if not tips:
        tips.append("Cache data looks healthy")
    return tips
