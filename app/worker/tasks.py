"""ARQ job definitions.

Jobs receive the worker context; `startup` puts a wired `Services` in it
under "services".
"""

from typing import Any, Awaitable

from app.core.audit import log_event
from app.core.logging import get_logger
from app.services.container import Services, build_services

log = get_logger(__name__)


async def _run_audited(ctx: dict[str, Any], job_name: str, coro: Awaitable[Any]) -> Any:
    """Run coroutine; on exception append a job_failed audit event then re-raise."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    try:
        return await coro
    except Exception as e:
        services: Services = ctx["services"]
        await log_event(
            services.storage,
            None,
            "job_failed",
            "job",
            job_id,
            {"job": job_name, "reason": str(e)[:2000]},
        )
        log.exception("job_failed", job=job_name, job_id=job_id, reason=str(e))
        raise


async def reconcile_accounts(ctx: dict[str, Any]) -> dict[str, Any]:
    """Cron job: compare every cached balance with its ledger; mismatches are frozen."""
    services: Services = ctx["services"]

    async def _run() -> dict[str, Any]:
        log.info("job_start", job="reconcile_accounts")
        mismatches = await services.balances.reconcile_all()
        log.info("job_done", job="reconcile_accounts", mismatches=len(mismatches))
        return {"mismatches": [m.account_id for m in mismatches]}

    return await _run_audited(ctx, "reconcile_accounts", _run())


async def poll_processing_payouts(ctx: dict[str, Any]) -> dict[str, int]:
    """Cron job: ask the gateway about payouts still processing."""
    services: Services = ctx["services"]

    async def _run() -> dict[str, int]:
        counts = await services.payouts.refresh_processing()
        log.info("job_done", job="poll_processing_payouts", **counts)
        return counts

    return await _run_audited(ctx, "poll_processing_payouts", _run())


async def startup(ctx: dict[str, Any]) -> None:
    services = build_services()
    await services.storage.init()
    ctx["services"] = services


async def shutdown(ctx: dict[str, Any]) -> None:
    services: Services | None = ctx.pop("services", None)
    if services is not None:
        await services.close()
