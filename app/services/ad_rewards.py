"""Ad placement configuration (admin) and public reward listing."""

from typing import Any

from app.core.audit import log_event
from app.core.clock import Clock, utcnow
from app.core.exceptions import NotFoundError, ValidationError
from app.core.logging import get_logger
from app.models.ad_reward import AD_TYPES, AdRewardConfig
from app.storage.base import LedgerQuery, LedgerStorage

log = get_logger(__name__)

EDITABLE_FIELDS = frozenset(
    {
        "ad_type",
        "ad_unit_name",
        "coin_reward",
        "is_active",
        "description",
        "minimum_watch_time",
        "daily_limit",
        "requirements",
    }
)


class AdRewardService:
    def __init__(self, storage: LedgerStorage, clock: Clock = utcnow):
        self._storage = storage
        self._clock = clock

    async def list_active(self, ad_type: str | None = None) -> list[AdRewardConfig]:
        if ad_type is not None and ad_type not in AD_TYPES:
            raise ValidationError("Invalid ad type")
        configs = await self._storage.list_ad_configs(ad_type=ad_type, active=True)
        return sorted(configs, key=lambda c: -c.coin_reward)

    async def list_all(self, ad_type: str | None = None) -> list[AdRewardConfig]:
        return await self._storage.list_ad_configs(ad_type=ad_type)

    async def create(self, config: AdRewardConfig, actor_id: str | None) -> AdRewardConfig:
        config = await self._storage.insert_ad_config(config)
        log.info("ad_reward_created", ad_unit_id=config.ad_unit_id, coin_reward=config.coin_reward, actor_id=actor_id)
        await log_event(
            self._storage,
            actor_id,
            "ad_reward_created",
            "ad_reward",
            config.id,
            {"ad_unit_id": config.ad_unit_id, "coin_reward": config.coin_reward},
        )
        return config

    async def update(self, config_id: str, fields: dict[str, Any], actor_id: str | None) -> AdRewardConfig:
        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update {', '.join(sorted(unknown))}")
        config = await self._storage.update_ad_config(config_id, {**fields, "updated_at": self._clock()})
        if config is None:
            raise NotFoundError("Ad reward not found")
        log.info("ad_reward_updated", ad_unit_id=config.ad_unit_id, fields=sorted(fields), actor_id=actor_id)
        await log_event(self._storage, actor_id, "ad_reward_updated", "ad_reward", config_id, {"fields": sorted(fields)})
        return config

    async def analytics(self) -> dict[str, Any]:
        """Per-unit counters next to the same figures replayed from the ledger."""
        configs = await self._storage.list_ad_configs()
        rows = await self._storage.group_entries(LedgerQuery(min_amount=1), ["ad_unit_id"])
        ledger = {r["ad_unit_id"]: r for r in rows if r["ad_unit_id"]}
        units = []
        for c in configs:
            replay = ledger.get(c.ad_unit_id, {"count": 0, "total": 0})
            units.append(
                {
                    "id": c.id,
                    "ad_unit_id": c.ad_unit_id,
                    "ad_unit_name": c.ad_unit_name,
                    "ad_type": c.ad_type,
                    "is_active": c.is_active,
                    "coin_reward": c.coin_reward,
                    **c.analytics.model_dump(),
                    "ledger_rewards": replay["count"],
                    "ledger_coins": replay["total"],
                    "consistent": replay["count"] == c.analytics.total_rewards_given
                    and replay["total"] == c.analytics.total_coins_distributed,
                }
            )
        by_type: dict[str, dict[str, int]] = {}
        for u in units:
            t = by_type.setdefault(u["ad_type"], {"units": 0, "total_views": 0, "total_coins_distributed": 0})
            t["units"] += 1
            t["total_views"] += u["total_views"]
            t["total_coins_distributed"] += u["total_coins_distributed"]
        return {"ad_units": units, "by_type": by_type}
