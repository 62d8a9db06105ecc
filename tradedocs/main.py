"""tradedocs -- Command Line Entry Point.

Builds the service graph from configuration and runs one lifecycle action
or a reminder run:

    1. Load configuration (config.yaml or defaults)
    2. Open the SQLite store and the local artifact / draft directories
    3. Wire templates, renderer, channels and side effects
    4. Dispatch the sub-command
    5. Print the outcome (or the title / message / fix of a rejection)

Usage::

    # Scheduled reminder run (e.g. from cron):
    tradedocs remind
    tradedocs remind --date 2026-03-14 --export output/reminders.json

    # Lifecycle actions:
    tradedocs send INV-1001
    tradedocs send INV-1001 --force
    tradedocs mark-paid INV-1001 --amount 1510.00 --method bank_transfer
    tradedocs cancel INV-1001 --reason "Raised in error"

    # Or without installing:
    python -m tradedocs.main --config path/to/custom.yaml remind
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional

from .attachments import AttachmentPipeline, FileArtifactStore, HtmlDocumentRenderer
from .channels import DraftProviderChannel, EmlDraftClient, SmsChannel, SmtpChannel
from .config import TradeDocsConfig, get_config
from .delivery import DeliveryOrchestrator
from .errors import LifecycleError
from .reminders import ReminderEscalationEngine
from .side_effects import SideEffectCoordinator
from .state_machine import DocumentStateMachine, TransitionResult
from .storage import SQLiteStorage
from .templates import TemplateEngine

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Composition root
# ---------------------------------------------------------------------------

@dataclass
class Services:
    """Everything one invocation needs, built once from config."""

    config: TradeDocsConfig
    storage: SQLiteStorage
    templates: TemplateEngine
    attachments: AttachmentPipeline
    delivery: DeliveryOrchestrator
    side_effects: SideEffectCoordinator
    lifecycle: DocumentStateMachine
    reminders: ReminderEscalationEngine


def build_services(
    config: TradeDocsConfig,
    sms: Optional[SmsChannel] = None,
) -> Services:
    """Wire the local implementations of every collaborator.

    Email goes through the business's own SMTP account when it has one and
    otherwise lands as an .eml draft for review.  No direct-send provider,
    push service or accounting sync is configured locally, so those
    side effects are recorded as skipped.
    """
    storage = SQLiteStorage(config.storage.resolve(config.storage.db_path))
    templates = TemplateEngine(config=config)
    attachments = AttachmentPipeline(
        HtmlDocumentRenderer(templates),
        FileArtifactStore(config.storage.resolve(config.storage.artifact_dir)),
    )
    delivery = DeliveryOrchestrator([
        SmtpChannel(config.smtp, timeout=config.delivery.channel_timeout_seconds),
        DraftProviderChannel(EmlDraftClient(config.storage.resolve(config.storage.drafts_dir))),
    ])
    side_effects = SideEffectCoordinator(storage)

    lifecycle = DocumentStateMachine(
        storage, templates, attachments, delivery, side_effects,
        settings=config.delivery,
    )
    reminders = ReminderEscalationEngine(
        storage, delivery, templates, side_effects, config,
        sms=sms, attachments=attachments,
    )
    return Services(
        config=config,
        storage=storage,
        templates=templates,
        attachments=attachments,
        delivery=delivery,
        side_effects=side_effects,
        lifecycle=lifecycle,
        reminders=reminders,
    )


def configure_logging(config: TradeDocsConfig, verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else getattr(logging, str(config.logging.level).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format=config.logging.format,
        datefmt=config.logging.datefmt,
    )
    if config.logging.log_file:
        log_path = config.storage.resolve(config.logging.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, encoding="utf-8")
        handler.setFormatter(logging.Formatter(config.logging.format, config.logging.datefmt))
        logging.getLogger().addHandler(handler)


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

def _print_result(result: TransitionResult) -> None:
    print(f"\n{result.message}")
    if result.channel_used is not None:
        print(f"  Channel : {result.channel_used.value}")
    for warning in result.warnings:
        print(f"  WARNING : {warning.title} - {warning.message}")
        print(f"            {warning.fix}")
    failed = [o for o in result.side_effects if o.failed]
    for outcome in failed:
        print(f"  NOTE    : {outcome.name} didn't complete ({outcome.detail})")


def _print_rejection(exc: LifecycleError) -> None:
    detail = exc.detail
    print(f"\nERROR: {detail.title}")
    print(f"  {detail.message}")
    print(f"  Fix: {detail.fix}")


# ---------------------------------------------------------------------------
# Sub-commands
# ---------------------------------------------------------------------------

def _cmd_remind(services: Services, args: argparse.Namespace) -> int:
    today = date.fromisoformat(args.date) if args.date else None
    result = services.reminders.run(today)
    print()
    print(result.summary())
    if args.export:
        path = result.export_json(args.export)
        print(f"\nExported to: {path}")
    return 0


def _cmd_send(services: Services, args: argparse.Namespace) -> int:
    result = services.lifecycle.send(
        args.document_id,
        force=args.force,
        allow_without_attachment=True if args.allow_without_attachment else None,
    )
    _print_result(result)
    return 0


def _cmd_mark_paid(services: Services, args: argparse.Namespace) -> int:
    result = services.lifecycle.mark_paid(
        args.document_id,
        amount=args.amount,
        payment_method=args.method,
        send_receipt=not args.no_receipt,
    )
    _print_result(result)
    return 0


def _cmd_cancel(services: Services, args: argparse.Namespace) -> int:
    result = services.lifecycle.cancel(args.document_id, reason=args.reason)
    _print_result(result)
    return 0


def _decimal(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not an amount: {value!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tradedocs",
        description="Quote and invoice lifecycle - send, record payments, run reminders",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  tradedocs remind\n"
            "  tradedocs send INV-1001 --force\n"
            "  tradedocs mark-paid INV-1001 --amount 1510.00\n"
            "  tradedocs --config custom_config.yaml --verbose remind\n"
        ),
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (default: project root config.yaml)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    remind = sub.add_parser("remind", help="Run the overdue reminder escalation once")
    remind.add_argument("--date", default=None, help="Treat this day (YYYY-MM-DD) as today")
    remind.add_argument("--export", default=None, help="Write the run summary as JSON to this path")
    remind.set_defaults(handler=_cmd_remind)

    send = sub.add_parser("send", help="Send a quote or invoice")
    send.add_argument("document_id")
    send.add_argument("--force", action="store_true", help="Resend a document that was already sent")
    send.add_argument(
        "--allow-without-attachment",
        action="store_true",
        help="Still send the email if the document can't be rendered",
    )
    send.set_defaults(handler=_cmd_send)

    paid = sub.add_parser("mark-paid", help="Record payment for an invoice")
    paid.add_argument("document_id")
    paid.add_argument("--amount", type=_decimal, default=None, help="Amount received (default: invoice total)")
    paid.add_argument("--method", default=None, help="Payment method, e.g. bank_transfer")
    paid.add_argument("--no-receipt", action="store_true", help="Don't email a receipt")
    paid.set_defaults(handler=_cmd_mark_paid)

    cancel = sub.add_parser("cancel", help="Cancel a draft or sent invoice")
    cancel.add_argument("document_id")
    cancel.add_argument("--reason", default="", help="Reason shown in the activity log")
    cancel.set_defaults(handler=_cmd_cancel)

    return parser


# ---------------------------------------------------------------------------
# CLI Entry Point
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> int:
    """CLI entry point.

    Returns:
        Exit code (0 = success, 1 = rejected or failed).
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = get_config(args.config)
    except ValueError as exc:
        print(f"\nERROR: invalid configuration: {exc}")
        return 1
    configure_logging(config, verbose=args.verbose)

    try:
        services = build_services(config)
        return args.handler(services, args)
    except LifecycleError as exc:
        logger.info("Rejected: %s", exc)
        _print_rejection(exc)
        return 1
    except ValueError as exc:
        logger.error("Invalid input: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except Exception as exc:
        logger.exception("Unexpected error")
        print(f"\nUNEXPECTED ERROR: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
