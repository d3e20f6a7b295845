from __future__ import annotations

import argparse
import csv
import logging
import os
import sys
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional
from zoneinfo import ZoneInfo

import yaml
from dotenv import load_dotenv
from playwright.sync_api import sync_playwright

from .config import AppConfig, load_config
from .errors import RefundMonitorError
from .extraction.extractor import StatusExtractor, profile_for
from .extraction.vision import VisionClient
from .identifiers import mask_identifier
from .logging_config import configure_logging
from .models import TRACKS, AlarmThresholds, TaxCase, Track
from .monitor import CheckOrchestrator, federal_case_filter, state_case_filter
from .notifications import StoreNotifier
from .portal.client import FederalPortalClient, StatePortalClient
from .portal.engines import resolve_engine
from .reporting import (
    alarm_dashboard,
    alarms_for_case,
    case_history,
    check_history,
    export_checks_csv,
    recent_stats,
    screenshot_url,
)
from .state import CaseStore
from .storage import ObjectStorage, get_storage
from .util.dates import parse_timestamp
from .util.money import parse_amount


logger = logging.getLogger("refund_monitor")


def _add_config_arg(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")


def _add_portal_arg(p: argparse.ArgumentParser, *, default: Optional[str] = "federal") -> None:
    p.add_argument("--portal", choices=TRACKS, default=default, help=f"Which portal/track (default: {default})")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="refund_monitor")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    preflight = sub.add_parser(
        "preflight",
        help="Validate configuration, the state DB, browser engines and screenshot storage. Does not open a portal.",
    )
    _add_config_arg(preflight)

    imp = sub.add_parser("import-cases", help="Upsert tax cases from a YAML or CSV file")
    _add_config_arg(imp)
    imp.add_argument("file", help="Path to cases.yaml / cases.csv")

    clients = sub.add_parser("clients", help="List cases eligible for checks on a portal")
    _add_config_arg(clients)
    _add_portal_arg(clients)

    check = sub.add_parser("check", help="Run one refund check for a case")
    _add_config_arg(check)
    _add_portal_arg(check)
    check.add_argument("--case-id", required=True)
    check.add_argument("--actor", default=None, help="User id recorded as the trigger/actor")
    check.add_argument("--headful", action="store_true", help="Run browser headful (debug)")

    check_all = sub.add_parser("check-all", help="Run checks for every eligible case, one at a time")
    _add_config_arg(check_all)
    _add_portal_arg(check_all)
    check_all.add_argument("--actor", default=None)
    check_all.add_argument("--headful", action="store_true", help="Run browser headful (debug)")

    schedule = sub.add_parser("schedule", help="Run batch checks daily at monitor.schedule_time until interrupted")
    _add_config_arg(schedule)
    _add_portal_arg(schedule, default=None)

    history = sub.add_parser("history", help="Show check history (newest first)")
    _add_config_arg(history)
    _add_portal_arg(history)
    history.add_argument("--case-id", default=None)
    history.add_argument("--cursor", default=None, help="Check id from the previous page")
    history.add_argument("--limit", type=int, default=20)
    history.add_argument("--status-history", action="store_true", help="Show applied status changes for --case-id")

    export = sub.add_parser("export-csv", help="Export the check history to CSV")
    _add_config_arg(export)
    _add_portal_arg(export)
    export.add_argument("--out", default="-", help="Output path (default: stdout)")

    shot = sub.add_parser("screenshot-url", help="Print a 24h URL for a check's result screenshot")
    _add_config_arg(shot)
    _add_portal_arg(shot)
    shot.add_argument("--check-id", required=True)

    approve = sub.add_parser("approve", help="Apply a proposed status change from a check")
    _add_config_arg(approve)
    _add_portal_arg(approve, default="state")
    approve.add_argument("--check-id", required=True)
    approve.add_argument("--actor", required=True, help="Admin user id approving the change")

    dismiss = sub.add_parser("dismiss", help="Dismiss a proposed status change without touching the case")
    _add_config_arg(dismiss)
    _add_portal_arg(dismiss, default="state")
    dismiss.add_argument("--check-id", required=True)

    stats = sub.add_parser("stats", help="Check counts and status changes over the last 24 hours")
    _add_config_arg(stats)
    _add_portal_arg(stats)

    alarms = sub.add_parser("alarms", help="List cases with staleness alarms")
    _add_config_arg(alarms)
    alarms.add_argument("--level", choices=("warning", "critical"), default=None)
    alarms.add_argument("--case-id", default=None)

    thresholds = sub.add_parser("thresholds", help="Show or override a case's alarm thresholds")
    _add_config_arg(thresholds)
    thresholds.add_argument("--case-id", required=True)
    thresholds.add_argument("--federal-days", type=int, default=None)
    thresholds.add_argument("--state-days", type=int, default=None)
    thresholds.add_argument("--verification-days", type=int, default=None)
    thresholds.add_argument("--disable-federal", action="store_true")
    thresholds.add_argument("--disable-state", action="store_true")
    thresholds.add_argument("--reason", default=None)
    thresholds.add_argument("--actor", default=None)
    thresholds.add_argument("--clear", action="store_true", help="Remove the override (back to defaults)")

    return p


def build_orchestrator(
    cfg: AppConfig,
    track: Track,
    store: CaseStore,
    *,
    storage: Optional[ObjectStorage] = None,
) -> CheckOrchestrator:
    storage = storage if storage is not None else get_storage(cfg.storage)
    common = dict(browser=cfg.browser, storage=storage, check_timeout_s=cfg.monitor.check_timeout_s)
    if track == "federal":
        portal_cfg = cfg.portals.federal
        automator = FederalPortalClient(portal=portal_cfg, **common)
        case_filter = federal_case_filter
    else:
        portal_cfg = cfg.portals.state
        automator = StatePortalClient(portal=portal_cfg, **common)
        case_filter = state_case_filter(cfg.portals.state.state_codes)

    vision = VisionClient(cfg.vision) if cfg.vision.usable else None
    return CheckOrchestrator(
        track=track,
        store=store,
        automator=automator,
        extractor=StatusExtractor(profile_for(track), vision),
        notifier=StoreNotifier(store),
        case_filter=case_filter,
        auto_apply=portal_cfg.auto_apply,
        retry_delay_s=cfg.monitor.retry_delay_s,
    )


def _bucket_for(cfg: AppConfig, track: Track) -> str:
    return cfg.portals.federal.bucket if track == "federal" else cfg.portals.state.bucket


def _load(args) -> AppConfig:
    cfg = load_config(args.config)
    if getattr(args, "headful", False):
        cfg = cfg.model_copy(update={"browser": cfg.browser.model_copy(update={"headless": False})})
    configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path)
    return cfg


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    cfg = _load(args)
    store = CaseStore(cfg.state.db_path)
    try:
        return _dispatch(args, cfg, store)
    except RefundMonitorError as e:
        logger.error("%s", e)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()


def _dispatch(args, cfg: AppConfig, store: CaseStore) -> int:
    if args.cmd == "preflight":
        return _preflight(cfg)

    if args.cmd == "import-cases":
        cases = _read_cases_file(Path(args.file))
        for case in cases:
            store.upsert_case(case)
        logger.info("Imported %d case(s) from %s", len(cases), args.file)
        return 0

    if args.cmd == "clients":
        orch = build_orchestrator(cfg, args.portal, store)
        cases = orch.eligible_cases()
        if not cases:
            print("No eligible cases.")
        for c in cases:
            status = c.status_for(args.portal)
            print(
                f"{c.id}\t{c.client_name}\t{c.tax_year}\t{mask_identifier(c.encrypted_identifier)}\t"
                f"{status.value if status else '-'}"
            )
        return 0

    if args.cmd == "check":
        orch = build_orchestrator(cfg, args.portal, store)
        outcome = orch.run_check(args.case_id, actor=args.actor, trigger="manual")
        check = outcome.check
        print(f"check_id={check.id} result={check.result} raw_status={check.raw_status!r}")
        if check.mapped_status:
            print(
                f"mapped={check.mapped_status.value} previous={check.previous_status.value if check.previous_status else '-'} "
                f"changed={check.status_changed} applied={outcome.applied}"
            )
        if outcome.error:
            print(f"error={outcome.error}")
        return 0 if outcome.success else 2

    if args.cmd == "check-all":
        orch = build_orchestrator(cfg, args.portal, store)
        summary = orch.run_all_checks(trigger="manual", actor=args.actor)
        print(f"total={summary.total} succeeded={summary.succeeded} failed={summary.failed}")
        return 0

    if args.cmd == "schedule":
        tracks: tuple[Track, ...] = (args.portal,) if args.portal else TRACKS
        _run_schedule(cfg, store, tracks)
        return 0

    if args.cmd == "history":
        if args.status_history:
            if not args.case_id:
                raise SystemExit("--status-history requires --case-id")
            for h in case_history(store, args.case_id, track=args.portal):
                print(
                    f"{h.created_at.isoformat()}\t{h.track}\t{h.previous_status.value if h.previous_status else '-'}"
                    f" -> {h.new_status.value}\t{h.changed_by or '-'}\t{h.comment}"
                )
            return 0
        page = check_history(store, portal=args.portal, cursor=args.cursor, limit=args.limit, tax_case_id=args.case_id)
        for c in page.checks:
            print(
                f"{c.created_at.isoformat()}\t{c.id}\t{c.tax_case_id}\t{c.result}\t{c.raw_status}\t"
                f"{c.mapped_status.value if c.mapped_status else '-'}\t{'CHANGED' if c.status_changed else ''}"
            )
        if page.next_cursor:
            print(f"next_cursor={page.next_cursor}")
        return 0

    if args.cmd == "export-csv":
        if args.out == "-":
            n = export_checks_csv(store, portal=args.portal, out=sys.stdout)
        else:
            out_path = Path(args.out)
            out_path.parent.mkdir(parents=True, exist_ok=True)
            with out_path.open("w", encoding="utf-8", newline="") as f:
                n = export_checks_csv(store, portal=args.portal, out=f)
            logger.info("Wrote %d check(s) to %s", n, out_path)
        return 0

    if args.cmd == "screenshot-url":
        print(screenshot_url(store, get_storage(cfg.storage), bucket=_bucket_for(cfg, args.portal), check_id=args.check_id))
        return 0

    if args.cmd == "approve":
        orch = build_orchestrator(cfg, args.portal, store)
        res = orch.approve_check(args.check_id, args.actor)
        if res.applied:
            print(
                f"applied: {res.previous_status.value if res.previous_status else '-'} -> "
                f"{res.new_status.value if res.new_status else '-'}"
            )
        else:
            print(f"not applied: {res.reason}")
        return 0

    if args.cmd == "dismiss":
        orch = build_orchestrator(cfg, args.portal, store)
        orch.dismiss_check(args.check_id)
        print("dismissed")
        return 0

    if args.cmd == "stats":
        s = recent_stats(store, portal=args.portal)
        print(
            f"last_24h total={s.total} succeeded={s.succeeded} failed={s.failed} status_changes={s.status_changes}"
        )
        return 0

    if args.cmd == "alarms":
        entries = (
            [alarms_for_case(store, store.get_case(args.case_id))]
            if args.case_id
            else alarm_dashboard(store, level=args.level)
        )
        shown = 0
        for e in entries:
            for a in e.alarms:
                print(f"{e.case.id}\t{e.case.client_name}\t{a.level}\t{a.type}\t{a.message}")
                shown += 1
        if not shown:
            print("No active alarms.")
        return 0

    if args.cmd == "thresholds":
        return _thresholds(args, store)

    raise SystemExit(f"Unknown command: {args.cmd}")


def _preflight(cfg: AppConfig) -> int:
    logger.info("Starting preflight checks")
    ok = True

    with sync_playwright() as p:
        try:
            engine = resolve_engine(p, cfg.browser.engines)
            logger.info("Browser engine OK: %s", engine.name)
        except RefundMonitorError as e:
            logger.error("%s", e)
            ok = False

    if cfg.vision.usable:
        logger.info("Vision extraction enabled (model=%s)", cfg.vision.model)
    else:
        logger.warning("Vision extraction disabled or OPENAI_API_KEY missing; text fallback only.")

    logger.info("Screenshot storage backend: %s", cfg.storage.backend)
    logger.info("State DB: %s", cfg.state.db_path)

    if ok:
        logger.info("Preflight OK")
        return 0
    logger.error("Preflight FAILED")
    return 1


def _thresholds(args, store: CaseStore) -> int:
    if args.clear:
        store.get_case(args.case_id)
        store.clear_thresholds(args.case_id)
        print("cleared")
        return 0

    changes = (
        args.federal_days,
        args.state_days,
        args.verification_days,
        args.reason,
    )
    if any(v is not None for v in changes) or args.disable_federal or args.disable_state:
        try:
            t = AlarmThresholds(
                federal_in_process_days=args.federal_days,
                state_in_process_days=args.state_days,
                verification_timeout_days=args.verification_days,
                disable_federal_alarms=args.disable_federal,
                disable_state_alarms=args.disable_state,
                reason=args.reason,
            )
        except ValueError as e:
            raise SystemExit(f"Invalid thresholds: {e}")
        store.set_thresholds(args.case_id, t, updated_by=args.actor)

    current = store.get_thresholds(args.case_id)
    if current is None:
        store.get_case(args.case_id)
        print("defaults (no override)")
    else:
        print(current.model_dump_json(indent=2))
    return 0


def _read_cases_file(path: Path) -> list[TaxCase]:
    if not path.exists():
        raise SystemExit(f"Cases file not found: {path}")

    if path.suffix.lower() == ".csv":
        with path.open(encoding="utf-8", newline="") as f:
            rows = list(csv.DictReader(f))
    else:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or []
        rows = data.get("cases", []) if isinstance(data, dict) else data

    cases: list[TaxCase] = []
    for i, row in enumerate(rows, start=1):
        clean = {k: v for k, v in dict(row).items() if v not in (None, "")}
        for k in ("federal_actual_refund", "state_actual_refund", "estimated_refund"):
            if k in clean:
                clean[k] = parse_amount(clean[k])
        for k in ("federal_status_changed_at", "state_status_changed_at"):
            if k in clean:
                clean[k] = parse_timestamp(str(clean[k]))
        if "encrypted_identifier" in clean:
            clean["encrypted_identifier"] = str(clean["encrypted_identifier"])
        try:
            cases.append(TaxCase.model_validate(clean))
        except ValueError as e:
            raise SystemExit(f"{path}: row {i} is invalid: {e}")
    return cases


def _seconds_until(hour: int, minute: int, tz: ZoneInfo, *, now: Optional[datetime] = None) -> float:
    now = (now or datetime.now(tz)).astimezone(tz)
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target = target + timedelta(days=1)
    return (target - now).total_seconds()


def _run_schedule(cfg: AppConfig, store: CaseStore, tracks: tuple[Track, ...]) -> None:
    tz = ZoneInfo(cfg.monitor.schedule_timezone)
    hour, minute = cfg.monitor.schedule_hour_minute
    orchestrators = [build_orchestrator(cfg, t, store) for t in tracks]
    logger.info(
        "Scheduler started: %s daily at %02d:%02d %s",
        ",".join(tracks),
        hour,
        minute,
        cfg.monitor.schedule_timezone,
    )
    try:
        while True:
            wait_s = _seconds_until(hour, minute, tz)
            logger.info("Next batch in %.0f minutes.", wait_s / 60)
            time.sleep(wait_s)
            for orch in orchestrators:
                try:
                    summary = orch.run_all_checks(trigger="schedule")
                    logger.info(
                        "%s scheduled batch: total=%d succeeded=%d failed=%d",
                        orch.portal_label,
                        summary.total,
                        summary.succeeded,
                        summary.failed,
                    )
                except Exception:
                    logger.exception("%s scheduled batch failed; will retry at the next slot.", orch.portal_label)
    except KeyboardInterrupt:
        logger.info("Scheduler stopped.")


if __name__ == "__main__":
    raise SystemExit(main())
