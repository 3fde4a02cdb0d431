"""Daily billing cron.

Runs the billing phases (materialize, charge, retry, expire) for one or
all allowlisted tenants and writes a JSON summary per tenant and day to
``artifacts/reports/billing/<tenant>/<date>.json``.
"""

from __future__ import annotations

import argparse
import json
import os
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from agents.subscriptions.billing_run import run_daily_billing
from agents.subscriptions.collaborators import HttpPaymentProcessor, PaymentProcessor
from backend.core.config import settings
from backend.core.observability import bind_context, init_observability, metrics
from backend.core.observability.logging import clear_context, logger
from backend.core.tenant.validator import TenantAllowlistLoader


def _tenant_input_list(all_tenants: bool, tenant: str | None, loader: TenantAllowlistLoader) -> list[str]:
    if all_tenants:
        return loader.tenants()
    if tenant:
        return [tenant]
    env_tenant = os.getenv("TENANT_DEFAULT")
    return [env_tenant] if env_tenant else []


def write_report(payload: dict[str, Any], tenant_id: str, run_date: date, base_path: Path) -> Path:
    path = base_path / tenant_id / f"{run_date.isoformat()}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    return path


def run_billing_for_tenant(
    tenant_id: str,
    run_date: date,
    engine: Engine,
    processor: PaymentProcessor,
    loader: TenantAllowlistLoader,
    base_path: Path,
) -> dict[str, Any]:
    """Validate the tenant, run its billing day and persist the summary."""
    validation = loader.validate(tenant_id)
    if not validation.ok:
        metrics.increment_tenant_validation_failure(validation.reason)
        logger.warning("Tenant rejected", extra={"tenant": tenant_id, "reason": validation.reason})
        return {"tenant_id": tenant_id, "date": run_date.isoformat(), "success": False, "rejected": validation.reason}

    tenant_id = tenant_id.strip().lower()
    trace_id = bind_context(tenant_id)
    try:
        result = run_daily_billing(engine, tenant_id, run_date, processor)
        payload = {**result.to_dict(), "trace_id": trace_id}
    except Exception as e:
        # configuration or database failures abort this tenant only
        logger.error("Billing run failed", exc_info=True)
        payload = {
            "tenant_id": tenant_id,
            "as_of": run_date.isoformat(),
            "success": False,
            "errors": [str(e)],
            "trace_id": trace_id,
        }
    finally:
        clear_context()

    report_path = write_report(payload, tenant_id, run_date, base_path)
    return {
        "tenant_id": tenant_id,
        "date": run_date.isoformat(),
        "success": payload["success"],
        "report": str(report_path),
    }


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Daily subscription billing run")
    parser.add_argument("--tenant", help="Tenant UUID")
    parser.add_argument("--all-tenants", action="store_true", help="Run every allowlisted tenant")
    parser.add_argument("--date", help="Billing date (YYYY-MM-DD), defaults to today in BILLING_TIMEZONE")
    parser.add_argument("--workers", type=int, default=1, help="Tenants processed concurrently")
    parser.add_argument("--report-dir", default=settings.BILLING_REPORT_DIR, help="Summary output directory")
    return parser.parse_args(argv)


def main(
    argv: list[str] | None = None,
    engine: Engine | None = None,
    processor: PaymentProcessor | None = None,
) -> int:
    args = parse_args(argv)
    init_observability(settings.enable_metrics)

    run_date = (
        date.fromisoformat(args.date) if args.date else datetime.now(ZoneInfo(settings.BILLING_TIMEZONE)).date()
    )
    loader = TenantAllowlistLoader()
    tenants = _tenant_input_list(args.all_tenants, args.tenant, loader)
    if not tenants:
        raise SystemExit("No tenant specified and TENANT_DEFAULT unset")

    engine = engine or create_engine(settings.database_url, future=True, pool_pre_ping=True)
    processor = processor or HttpPaymentProcessor()
    base_path = Path(args.report_dir)

    def _run(tenant_id: str) -> dict[str, Any]:
        return run_billing_for_tenant(tenant_id, run_date, engine, processor, loader, base_path)

    if args.workers > 1 and len(tenants) > 1:
        with ThreadPoolExecutor(max_workers=args.workers) as pool:
            results = list(pool.map(_run, tenants))
    else:
        results = [_run(tenant_id) for tenant_id in tenants]

    print(json.dumps(results, ensure_ascii=False))
    return 0 if all(r["success"] for r in results) else 1


if __name__ == "__main__":
    raise SystemExit(main())
