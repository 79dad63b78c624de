"""
CLI main entry point.
"""

import argparse
import json
import logging
import sys
from datetime import date
from pathlib import Path

from ..config import Config, ConfigValidationError, create_default_config, load_config
from ..documents import (
    DocumentProvider,
    DocumentProviderError,
    HttpDocumentProvider,
    StoreDocumentProvider,
)
from ..errors import ReconciliationError
from ..ingestion import read_statement_file
from ..schemas.documents import DocumentCandidate
from ..schemas.ledger import BatchStatus, DocumentKind, DocumentRef
from ..schemas.rules import RuleDraft
from ..services import AggregatorService, ReconciliationService
from ..state_store import StateStore

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got '{value}'") from None


def _document_ref(value: str) -> DocumentRef:
    try:
        return DocumentRef.parse(value)
    except ReconciliationError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def _add_rule_fields(parser: argparse.ArgumentParser, required: bool) -> None:
    parser.add_argument("--name", required=required, help="Rule name")
    parser.add_argument(
        "--keyword",
        dest="keywords",
        action="append",
        required=required,
        help="Keyword that must occur in the label (repeatable, all must match)",
    )
    parser.add_argument(
        "--kind",
        choices=[k.value for k in DocumentKind],
        type=str.upper,
        help="Target document kind",
    )
    parser.add_argument(
        "--direction",
        choices=["DEBIT", "CREDIT", "ANY"],
        type=str.upper,
        help="Transaction direction filter",
    )
    parser.add_argument("--document", help="Target document id (omit for a type hint)")
    parser.add_argument("--priority", type=int, help="Lower is evaluated first")
    parser.add_argument(
        "--inactive", action="store_true", default=None, help="Create/keep the rule disabled"
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="ledger-reconcile",
        description="Reconcile bank statements against invoices, subscriptions and charge declarations",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-config", help="Write a default config file")

    # import command
    import_parser = subparsers.add_parser("import", help="Import a bank statement CSV")
    import_parser.add_argument("csv", type=Path, help="Statement CSV file")
    import_parser.add_argument("--start", type=_iso_date, required=True, help="Period start")
    import_parser.add_argument("--end", type=_iso_date, required=True, help="Period end")
    import_parser.add_argument("--batch", help="Resume an interrupted import into this batch")
    import_parser.add_argument(
        "--no-auto-match", action="store_true", help="Skip rule matching after import"
    )

    auto_parser = subparsers.add_parser("auto-match", help="Apply matching rules to a batch")
    auto_parser.add_argument("batch", help="Batch ID (RAP-YYMM-NN)")

    candidates_parser = subparsers.add_parser("candidates", help="List candidate documents")
    candidates_parser.add_argument("line", help="Line ID (RL-YYYYMMDD-NNNNN)")
    candidates_parser.add_argument(
        "--kind", choices=[k.value for k in DocumentKind], type=str.upper
    )

    match_parser = subparsers.add_parser("match", help="Match a line to one document")
    match_parser.add_argument("line")
    match_parser.add_argument("document", type=_document_ref, help="kind:id")
    match_parser.add_argument("--notes")

    split_parser = subparsers.add_parser("split", help="Match a line to several documents")
    split_parser.add_argument("line")
    split_parser.add_argument("documents", type=_document_ref, nargs="+", help="kind:id ...")
    split_parser.add_argument("--notes")

    amend_parser = subparsers.add_parser("amend", help="Change the documents of a PARTIAL line")
    amend_parser.add_argument("line")
    amend_parser.add_argument("documents", type=_document_ref, nargs="+", help="kind:id ...")
    amend_parser.add_argument("--notes")

    inverse_parser = subparsers.add_parser("inverse", help="List lines that cancel a line out")
    inverse_parser.add_argument("line")

    pair_parser = subparsers.add_parser("pair", help="Reconcile two lines against each other")
    pair_parser.add_argument("line")
    pair_parser.add_argument("other", help="Line cancelling the first one out")
    pair_parser.add_argument("--notes")

    for name, help_text in (
        ("unmatch", "Clear a line's match"),
        ("ignore", "Mark a line as not reconcilable"),
        ("reopen", "Put an ignored line back to pending"),
    ):
        line_parser = subparsers.add_parser(name, help=help_text)
        line_parser.add_argument("line")
        line_parser.add_argument("--notes")

    vat_parser = subparsers.add_parser("vat", help="Store a line's VAT breakdown")
    vat_parser.add_argument("line")
    vat_parser.add_argument("--net", required=True)
    vat_parser.add_argument("--vat", required=True)
    vat_parser.add_argument("--gross", required=True)

    validate_parser = subparsers.add_parser("validate", help="Validate a batch")
    validate_parser.add_argument("batch")
    validate_parser.add_argument(
        "--override", metavar="NOTE", help="Validate despite unreconciled lines"
    )

    archive_parser = subparsers.add_parser("archive", help="Archive a validated batch")
    archive_parser.add_argument("batch")

    batches_parser = subparsers.add_parser("batches", help="List batches")
    batches_parser.add_argument(
        "--status", choices=[s.value for s in BatchStatus], type=str.upper
    )

    show_parser = subparsers.add_parser("show", help="Show a batch and its lines")
    show_parser.add_argument("batch")

    # rules commands
    rules_parser = subparsers.add_parser("rules", help="Manage matching rules")
    rules_sub = rules_parser.add_subparsers(dest="rules_command")
    rules_list = rules_sub.add_parser("list", help="List rules in evaluation order")
    rules_list.add_argument("--active", action="store_true", help="Only active rules")
    rules_add = rules_sub.add_parser("add", help="Create a rule")
    _add_rule_fields(rules_add, required=True)
    rules_update = rules_sub.add_parser("update", help="Update a rule")
    rules_update.add_argument("rule_id", type=int)
    _add_rule_fields(rules_update, required=False)
    rules_update.add_argument(
        "--active", dest="inactive", action="store_false", default=None, help="Re-enable the rule"
    )
    rules_delete = rules_sub.add_parser("delete", help="Delete a rule")
    rules_delete.add_argument("rule_id", type=int)

    # documents commands
    documents_parser = subparsers.add_parser("documents", help="Document projection")
    documents_sub = documents_parser.add_subparsers(dest="documents_command")
    documents_load = documents_sub.add_parser("load", help="Load documents from a JSON file")
    documents_load.add_argument("json_file", type=Path)
    documents_history = documents_sub.add_parser(
        "history", help="Bank lines linked to a document"
    )
    documents_history.add_argument("document", type=_document_ref, help="kind:id")

    # payments commands
    payments_parser = subparsers.add_parser("payments", help="Payment histories with VAT")
    payments_parser.add_argument("kind", choices=["subscriptions", "charges"])
    payments_parser.add_argument("--start", type=_iso_date, required=True)
    payments_parser.add_argument("--end", type=_iso_date, required=True)
    payments_parser.add_argument("--document", help="Restrict to one document id")
    payments_parser.add_argument("--json", action="store_true", help="Print JSON rows")

    overview_parser = subparsers.add_parser("overview", help="Annual overview by month")
    overview_parser.add_argument("year", type=int)
    overview_parser.add_argument("--counterparty")
    overview_parser.add_argument("--search")

    subparsers.add_parser("status", help="Show ledger statistics")

    return parser


def create_document_provider(config: Config, store: StateStore) -> DocumentProvider:
    """Build the configured document provider."""
    if config.documents.provider == "http":
        return HttpDocumentProvider(
            base_url=config.documents.base_url or "",
            token=config.documents.token,
            timeout=config.documents.timeout_seconds,
            max_retries=config.documents.max_retries,
            backoff_factor=config.documents.backoff_factor,
        )
    return StoreDocumentProvider(store)


def _open(config: Config) -> tuple[StateStore, DocumentProvider, ReconciliationService]:
    store = StateStore(config.state_db_path, busy_timeout=config.store.busy_timeout_seconds)
    provider = create_document_provider(config, store)
    return store, provider, ReconciliationService(store, provider, config)


def _print_warnings(warnings: list[str]) -> None:
    for warning in warnings:
        print(f"  ⚠️  {warning}")


def cmd_import(
    config: Config,
    csv_path: Path,
    start: date,
    end: date,
    batch_id: str | None,
    auto_match: bool,
) -> int:
    """Import a statement and optionally run the matching rules."""
    lines = read_statement_file(
        csv_path, encoding=config.statement.encoding, delimiter=config.statement.delimiter
    )
    _, _, service = _open(config)

    result = service.import_statement(start, end, lines, batch_id=batch_id)
    print(f"✓ Batch {result.batch.batch_id}: {len(result.created)} line(s) imported")
    if result.skipped:
        print(f"  {result.skipped} line(s) already present, skipped")
    if result.batch_auto_validated:
        print(f"✓ Batch {result.batch.batch_id} fully reconciled, now VALIDATED")

    if auto_match and config.reconciliation.auto_match_enabled:
        return cmd_auto_match(config, result.batch.batch_id, service)
    return 0


def cmd_auto_match(
    config: Config, batch_id: str, service: ReconciliationService | None = None
) -> int:
    """Run the rule engine over a batch."""
    if service is None:
        _, _, service = _open(config)
    report = service.auto_match_batch(batch_id)

    print(f"\n🔄 Auto-match {batch_id}")
    print("=" * 40)
    print(f"  Matched:          {len(report.matched)}")
    print(f"  With suggestions: {len(report.suggestions)}")
    print(f"  Unmatched:        {len(report.unmatched)}")
    for line_id, candidates in report.suggestions.items():
        refs = ", ".join(str(c.ref) for c in candidates[:5])
        print(f"    {line_id}: {refs}")
    for line_id, error in report.errors.items():
        print(f"  ❌ {line_id}: {error}")
    _print_warnings(report.warnings)
    if report.batch_auto_validated:
        print(f"✓ Batch {batch_id} fully reconciled, now VALIDATED")
    return 1 if report.errors else 0


def cmd_candidates(config: Config, line_id: str, kind: str | None) -> int:
    _, _, service = _open(config)
    scored = service.find_candidates(line_id, DocumentKind(kind) if kind else None)
    if not scored:
        print(f"No candidate documents for {line_id}")
        return 0
    for item in scored:
        c = item.candidate
        print(f"  [{item.tier.name:8}] {c.ref}  {c.counterparty}  {c.amount_due:.2f}  {c.payment_status}")
    return 0


def _print_transition(result) -> None:
    tx = result.transaction
    print(f"✓ {tx.line_id}: {result.previous_status.value} -> {tx.status.value}")
    if result.delta is not None and result.delta:
        print(f"  Gap between documents and bank amount: {result.delta:.2f}")
    if result.counterpart is not None:
        other = result.counterpart
        print(f"✓ {other.line_id}: paired line now {other.status.value}")
    _print_warnings(result.warnings)
    if result.batch_auto_validated:
        print(f"✓ Batch {result.batch.batch_id} fully reconciled, now VALIDATED")


def cmd_inverse(config: Config, line_id: str) -> int:
    _, _, service = _open(config)
    lines = service.find_inverse_lines(line_id)
    if not lines:
        print(f"No line cancels {line_id} out")
        return 0
    for tx in lines:
        print(
            f"  {tx.line_id}  {tx.value_date}  {tx.display_amount:>10.2f}  "
            f"{tx.status.value:8}  {tx.label[:40]}"
        )
    return 0


def cmd_show(config: Config, batch_id: str) -> int:
    _, _, service = _open(config)
    batch = service.get_batch(batch_id)
    print(f"\n📒 {batch.batch_id}  {batch.period_start} .. {batch.period_end}")
    print("=" * 60)
    print(f"  Status:     {batch.status.value}")
    print(f"  Reconciled: {batch.reconciled_count}/{batch.total_count}")
    if not batch.import_complete:
        print("  ⚠️  Import incomplete")
    print()
    for tx in batch.transactions:
        refs = ", ".join(tx.match.targets()) if tx.match else ""
        print(
            f"  {tx.line_id}  {tx.value_date}  {tx.display_amount:>10.2f}  "
            f"{tx.status.value:8}  {tx.label[:40]:40}  {refs}"
        )
    return 0


def cmd_batches(config: Config, status: str | None) -> int:
    _, _, service = _open(config)
    batches = service.list_batches(BatchStatus(status) if status else None)
    for batch in batches:
        print(
            f"  {batch.batch_id}  {batch.period_start} .. {batch.period_end}  "
            f"{batch.status.value:11}  {batch.reconciled_count}/{batch.total_count}"
        )
    if not batches:
        print("No batches")
    return 0


def _draft_from_args(parsed: argparse.Namespace, base: RuleDraft | None = None) -> RuleDraft:
    base = base or RuleDraft(name="")
    return RuleDraft(
        name=parsed.name if parsed.name is not None else base.name,
        keywords=parsed.keywords if parsed.keywords is not None else base.keywords,
        document_kind=parsed.kind or base.document_kind,
        direction=parsed.direction or base.direction,
        document_id=parsed.document if parsed.document is not None else base.document_id,
        active=(not parsed.inactive) if parsed.inactive is not None else base.active,
        priority=parsed.priority if parsed.priority is not None else base.priority,
    )


def cmd_rules(config: Config, parsed: argparse.Namespace) -> int:
    _, _, service = _open(config)

    if parsed.rules_command == "add":
        rule = service.create_rule(_draft_from_args(parsed))
        print(f"✓ Rule {rule.rule_id} created: {rule.name}")
    elif parsed.rules_command == "update":
        current = service.get_rule(parsed.rule_id)
        base = RuleDraft(
            name=current.name,
            keywords=list(current.keywords),
            document_kind=current.document_kind.value,
            direction=current.direction.value,
            document_id=current.document_id,
            active=current.active,
            priority=current.priority,
        )
        rule = service.update_rule(parsed.rule_id, _draft_from_args(parsed, base))
        print(f"✓ Rule {rule.rule_id} updated")
    elif parsed.rules_command == "delete":
        service.delete_rule(parsed.rule_id)
        print(f"✓ Rule {parsed.rule_id} deleted")
    else:
        for rule in service.list_rules(active_only=getattr(parsed, "active", False)):
            target = str(rule.target) if rule.target else f"{rule.document_kind.value} (hint)"
            flag = "" if rule.active else " [inactive]"
            print(
                f"  #{rule.rule_id} p{rule.priority} {rule.direction.value:6} "
                f"{' + '.join(rule.keywords)} -> {target}  ({rule.name}){flag}"
            )
    return 0


def cmd_documents(config: Config, parsed: argparse.Namespace) -> int:
    store, provider, _ = _open(config)

    if parsed.documents_command == "load":
        if not isinstance(provider, StoreDocumentProvider):
            print("❌ Documents can only be loaded with documents.provider: store")
            return 1
        with open(parsed.json_file) as f:
            items = json.load(f)
        for item in items:
            provider.upsert_document(DocumentCandidate.from_dict(item))
        print(f"✓ Loaded {len(items)} document(s)")
        return 0

    if parsed.documents_command == "history":
        aggregator = AggregatorService(store, provider)
        ref = parsed.document
        print(f"\n📄 {ref}: {aggregator.document_settlement(ref).value}")
        for entry in aggregator.document_history(ref):
            others = ", ".join(str(r) for r in entry.co_documents)
            print(
                f"  {entry.line_id}  {entry.value_date}  {entry.amount:>10.2f}  "
                f"{entry.status.value:8}  {entry.batch_id}  {others}"
            )
        return 0

    print("Usage: documents {load,history}")
    return 1


def cmd_payments(config: Config, parsed: argparse.Namespace) -> int:
    store, provider, _ = _open(config)
    aggregator = AggregatorService(store, provider)

    if parsed.kind == "subscriptions":
        rows = aggregator.subscription_payments(parsed.start, parsed.end, parsed.document)
    else:
        rows = aggregator.charge_declaration_payments(parsed.start, parsed.end, parsed.document)

    if parsed.json:
        print(json.dumps([r.to_dict() for r in rows], indent=2))
        return 0

    for row in rows:
        flag = " ⚠️" if row.degraded else ""
        print(
            f"  {row.value_date}  {row.document}  {row.amount:>10.2f}  "
            f"net {row.total_net:>10.2f}  vat {row.total_vat:>8.2f}  "
            f"{row.vat_source.value}{flag}"
        )
    if not rows:
        print("No payments in this period")
    return 0


def cmd_overview(config: Config, year: int, counterparty: str | None, search: str | None) -> int:
    store, provider, _ = _open(config)
    overview = AggregatorService(store, provider).annual_overview(year, counterparty, search)

    print(f"\n📅 {year}")
    print("=" * 60)
    for month in overview.months:
        if not month.line_count:
            continue
        print(
            f"  {year}-{month.month:02d}  debit {month.debit:>12.2f}  credit {month.credit:>12.2f}  "
            f"reconciled {month.reconciled_count}/{month.line_count}"
        )
    print(
        f"  Total    debit {overview.total_debit:>12.2f}  credit {overview.total_credit:>12.2f}  "
        f"reconciled {overview.reconciled_count}/{len(overview.transactions)}"
    )
    return 0


def cmd_status(config: Config) -> int:
    """Show ledger status."""
    _, _, service = _open(config)
    stats = service.get_status()

    print("\n📊 Ledger Status")
    print("=" * 40)
    print(f"  Batches in progress: {stats['batches_in_progress']}")
    print(f"  Batches validated:   {stats['batches_validated']}")
    print(f"  Batches archived:    {stats['batches_archived']}")
    print(f"  Lines pending:       {stats['lines_pending']}")
    print(f"  Lines matched:       {stats['lines_matched']}")
    print(f"  Lines partial:       {stats['lines_partial']}")
    print(f"  Lines ignored:       {stats['lines_ignored']}")
    print(f"  Active rules:        {stats['rules_active']}")
    print()
    return 0


def _dispatch(config: Config, parsed: argparse.Namespace) -> int:
    command = parsed.command

    if command == "import":
        return cmd_import(
            config, parsed.csv, parsed.start, parsed.end, parsed.batch, not parsed.no_auto_match
        )
    elif command == "auto-match":
        return cmd_auto_match(config, parsed.batch)
    elif command == "candidates":
        return cmd_candidates(config, parsed.line, parsed.kind)
    elif command == "inverse":
        return cmd_inverse(config, parsed.line)
    elif command == "pair":
        _, _, service = _open(config)
        _print_transition(service.pair_inverse(parsed.line, parsed.other, parsed.notes))
        return 0
    elif command in ("match", "split", "amend", "unmatch", "ignore", "reopen"):
        _, _, service = _open(config)
        if command == "match":
            result = service.match_single(parsed.line, parsed.document, parsed.notes)
        elif command == "split":
            result = service.match_split(parsed.line, parsed.documents, parsed.notes)
        elif command == "amend":
            result = service.amend_match(parsed.line, parsed.documents, parsed.notes)
        else:
            result = getattr(service, command)(parsed.line, parsed.notes)
        _print_transition(result)
        return 0
    elif command == "vat":
        _, _, service = _open(config)
        tx = service.set_vat_breakdown(parsed.line, parsed.net, parsed.vat, parsed.gross)
        print(f"✓ {tx.line_id}: VAT breakdown stored")
        return 0
    elif command == "validate":
        _, _, service = _open(config)
        batch = service.validate_batch(parsed.batch, parsed.override)
        print(f"✓ Batch {batch.batch_id} {batch.status.value}")
        return 0
    elif command == "archive":
        _, _, service = _open(config)
        batch = service.archive_batch(parsed.batch)
        print(f"✓ Batch {batch.batch_id} {batch.status.value}")
        return 0
    elif command == "batches":
        return cmd_batches(config, parsed.status)
    elif command == "show":
        return cmd_show(config, parsed.batch)
    elif command == "rules":
        return cmd_rules(config, parsed)
    elif command == "documents":
        return cmd_documents(config, parsed)
    elif command == "payments":
        return cmd_payments(config, parsed)
    elif command == "overview":
        return cmd_overview(config, parsed.year, parsed.counterparty, parsed.search)
    elif command == "status":
        return cmd_status(config)
    return 1


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        if parsed.config.exists():
            print(f"❌ {parsed.config} already exists")
            return 1
        create_default_config(parsed.config)
        print(f"✓ Default config written to {parsed.config}")
        return 0

    # Load config
    try:
        config = load_config(parsed.config)
        config.require_valid()
    except (ConfigValidationError, OSError, ValueError) as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    try:
        return _dispatch(config, parsed)
    except (ReconciliationError, DocumentProviderError) as e:
        logger.debug("Command failed", exc_info=True)
        print(f"❌ {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
