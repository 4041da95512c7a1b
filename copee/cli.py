import argparse
import json
import logging
import signal
import sys
import threading
import uuid

from copee.db import get_engine, session_factory
from copee.models import Base, Site
from copee.services.catalog import CategorySync
from copee.services.upload.service import build_pipeline
from copee.services.upload.store import JobRequest
from copee.services.upload.worker import WorkerPool
from copee.settings import settings
from copee.woocommerce_client import WooCommerceClient

# 로그 설정
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("copee.cli")


def _print(data) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def _load_site(site_id: uuid.UUID) -> Site:
    with session_factory() as session:
        site = session.get(Site, site_id)
    if not site:
        logger.error(f"[CLI] 스토어를 찾을 수 없습니다: {site_id}")
        sys.exit(1)
    return site


def cmd_init_db(args):
    Base.metadata.create_all(bind=get_engine())
    logger.info("[CLI] 테이블 생성 완료")


def cmd_run_worker(args):
    pipeline = build_pipeline(session_factory)
    pool = WorkerPool(
        pipeline.worker,
        pipeline.queue,
        concurrency=args.concurrency,
        recover=pipeline.service.recover,
    )

    recovered = pipeline.service.recover()
    logger.info(f"[CLI] 시작 시 복구: {recovered}")

    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    pool.start()
    logger.info(f"[CLI] 업로드 워커 실행 중 (concurrency={pool.concurrency})")
    stop.wait()
    pool.stop()


def cmd_enqueue(args):
    pipeline = build_pipeline(session_factory)
    requests = [
        JobRequest(product_id=product_id, site_id=args.site, target_category=args.category)
        for product_id in args.products
    ]
    _print(pipeline.service.enqueue(requests))


def cmd_cancel(args):
    pipeline = build_pipeline(session_factory)
    _print(pipeline.service.cancel(job_ids=args.jobs or None, user_id=args.user))


def cmd_retry_failed(args):
    pipeline = build_pipeline(session_factory)
    _print(pipeline.service.retry_failed(job_ids=args.jobs or None, user_id=args.user))


def cmd_status(args):
    pipeline = build_pipeline(session_factory)
    if args.job:
        state = pipeline.service.status(args.job)
        if state is None:
            logger.error(f"[CLI] 작업을 찾을 수 없습니다: {args.job}")
            sys.exit(1)
        _print(state.to_dict())
        return

    page = pipeline.service.list_jobs(user_id=args.user, status=args.status, page=args.page, limit=args.limit)
    _print({
        "items": [state.to_dict() for state in page["items"]],
        "pagination": page["pagination"],
    })


def cmd_credit(args):
    pipeline = build_pipeline(session_factory)
    balance = pipeline.ledger.credit(args.user, args.amount, reference=args.reference, description=args.description)
    _print({"userId": balance.user_id, "balance": balance.balance})


def cmd_balance(args):
    pipeline = build_pipeline(session_factory)
    _print({
        "userId": args.user,
        "balance": pipeline.ledger.balance(args.user),
        "spending": pipeline.ledger.spending(args.user, args.range),
    })


def cmd_sync_categories(args):
    site = _load_site(args.site)
    _print(CategorySync(session_factory).sync(site))


def cmd_check_site(args):
    site = _load_site(args.site)
    _print(WooCommerceClient(site).check_connection())


def main(argv=None):
    parser = argparse.ArgumentParser(description="Copee upload pipeline CLI")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init-db", help="Create tables (development)")

    worker_parser = subparsers.add_parser("run-worker", help="Run upload worker pool")
    worker_parser.add_argument("--concurrency", type=int, default=settings.upload_concurrency)

    enqueue_parser = subparsers.add_parser("enqueue", help="Queue products for upload")
    enqueue_parser.add_argument("--site", type=uuid.UUID, required=True)
    enqueue_parser.add_argument("--category", help="Destination category id")
    enqueue_parser.add_argument("products", type=uuid.UUID, nargs="+")

    cancel_parser = subparsers.add_parser("cancel", help="Cancel jobs (no ids: all FAILED jobs)")
    cancel_parser.add_argument("--user", type=uuid.UUID)
    cancel_parser.add_argument("jobs", type=uuid.UUID, nargs="*")

    retry_parser = subparsers.add_parser("retry-failed", help="Manually retry FAILED jobs")
    retry_parser.add_argument("--user", type=uuid.UUID)
    retry_parser.add_argument("jobs", type=uuid.UUID, nargs="*")

    status_parser = subparsers.add_parser("status", help="Show job status or list jobs")
    status_parser.add_argument("--job", type=uuid.UUID)
    status_parser.add_argument("--user", type=uuid.UUID)
    status_parser.add_argument("--status", choices=["PENDING", "PROCESSING", "SUCCESS", "FAILED", "CANCELLED"])
    status_parser.add_argument("--page", type=int, default=1)
    status_parser.add_argument("--limit", type=int, default=20)

    credit_parser = subparsers.add_parser("credit", help="Top up a user's balance")
    credit_parser.add_argument("--user", type=uuid.UUID, required=True)
    credit_parser.add_argument("--amount", type=int, required=True)
    credit_parser.add_argument("--reference")
    credit_parser.add_argument("--description")

    balance_parser = subparsers.add_parser("balance", help="Show balance and recent spending")
    balance_parser.add_argument("--user", type=uuid.UUID, required=True)
    balance_parser.add_argument("--range", choices=["week", "month", "quarter", "year"], default="week")

    sync_parser = subparsers.add_parser("sync-categories", help="Sync destination categories")
    sync_parser.add_argument("--site", type=uuid.UUID, required=True)

    check_parser = subparsers.add_parser("check-site", help="Check destination credentials")
    check_parser.add_argument("--site", type=uuid.UUID, required=True)

    args = parser.parse_args(argv)

    commands = {
        "init-db": cmd_init_db,
        "run-worker": cmd_run_worker,
        "enqueue": cmd_enqueue,
        "cancel": cmd_cancel,
        "retry-failed": cmd_retry_failed,
        "status": cmd_status,
        "credit": cmd_credit,
        "balance": cmd_balance,
        "sync-categories": cmd_sync_categories,
        "check-site": cmd_check_site,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return

    try:
        handler(args)
    except Exception as e:
        logger.exception(f"[CLI] Critical error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
