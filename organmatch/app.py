import argparse
import json
from datetime import datetime
from pathlib import Path

from . import __version__
from .batch import BatchMatchingEngine, StatisticsBoard, get_statistics
from .config import load_env, load_settings
from .database import Donor, Recipient, get_session, init_database
from .errors import MatchingError, PersistenceFailure
from .ledger import HttpEventSink, LoggingEventSink
from .lifecycle import MatchLifecycleManager
from .logger import get_logger
from .orchestrator import MatchOrchestrator
from .schema import parse_record, validate_donor, validate_recipient
from .scoring import score_pair
from .storage import SqlRegistry

DONOR_COLUMNS = {c.name for c in Donor.__table__.columns} - {"id", "status"}
RECIPIENT_COLUMNS = {c.name for c in Recipient.__table__.columns} - {"id", "status"}


def _open(args: argparse.Namespace):
    settings = load_settings()
    db_path = Path(args.db) if args.db else settings.db_path
    init_database(db_path)
    registry = SqlRegistry(get_session(db_path))
    sink = HttpEventSink(settings.ledger_url) if settings.ledger_url else LoggingEventSink()
    return settings, registry, sink


def _load_json(path_str: str) -> dict:
    input_path = Path(path_str)
    if not input_path.exists():
        raise SystemExit(f"Input file not found: {input_path}")
    with input_path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _print_match(match) -> None:
    print(
        f"[{match.status}] match={match.id} donor={match.donor_id} "
        f"recipient={match.recipient_id} organ={match.organ_type} score={match.compatibility_score}"
    )


def register_donor(registry: SqlRegistry, orchestrator: MatchOrchestrator, data: dict):
    """Store a donor record and run matching for it."""
    try:
        record = parse_record(data)
    except ValueError as e:
        return None, [], [f"Invalid date value: {e}"]
    errors = validate_donor(record)
    if not record.get("name"):
        errors.append("Missing required field: name")
    if errors:
        return None, [], errors
    donor = registry.add_donor(**{k: v for k, v in record.items() if k in DONOR_COLUMNS})
    return donor, orchestrator.on_donor_registered(donor), []


def register_recipient(registry: SqlRegistry, orchestrator: MatchOrchestrator, data: dict):
    """Store a recipient record and run matching for it."""
    try:
        record = parse_record(data)
    except ValueError as e:
        return None, [], [f"Invalid date value: {e}"]
    record.setdefault("created_at", datetime.now())
    errors = validate_recipient(record)
    if not record.get("name"):
        errors.append("Missing required field: name")
    if errors:
        return None, [], errors
    recipient = registry.add_recipient(**{k: v for k, v in record.items() if k in RECIPIENT_COLUMNS})
    return recipient, orchestrator.on_recipient_registered(recipient), []


def _orchestrator(settings, registry, sink) -> MatchOrchestrator:
    return MatchOrchestrator(
        registry,
        sink=sink,
        acceptance_threshold=settings.acceptance_threshold,
        fully_waited_days=settings.fully_waited_days,
    )


def cmd_init_db(args: argparse.Namespace) -> None:
    settings = load_settings()
    db_path = Path(args.db) if args.db else settings.db_path
    init_database(db_path)
    print(f"Database ready: {db_path}")


def cmd_register_donor(args: argparse.Namespace) -> None:
    settings, registry, sink = _open(args)
    donor, matches, errors = register_donor(registry, _orchestrator(settings, registry, sink), _load_json(args.input))
    if errors:
        print("Invalid:")
        for e in errors:
            print(f" - {e}")
        raise SystemExit(2)
    print(f"Donor: {donor.id}")
    print(f"Matches created: {len(matches)}")
    for match in matches:
        _print_match(match)


def cmd_register_recipient(args: argparse.Namespace) -> None:
    settings, registry, sink = _open(args)
    recipient, matches, errors = register_recipient(
        registry, _orchestrator(settings, registry, sink), _load_json(args.input)
    )
    if errors:
        print("Invalid:")
        for e in errors:
            print(f" - {e}")
        raise SystemExit(2)
    print(f"Recipient: {recipient.id}")
    print(f"Matches created: {len(matches)}")
    for match in matches:
        _print_match(match)


def cmd_score(args: argparse.Namespace) -> None:
    settings, registry, _ = _open(args)
    donor = registry.get_donor(args.donor_id)
    recipient = registry.get_recipient(args.recipient_id)
    if donor is None or recipient is None:
        raise SystemExit("Donor or recipient not found")
    breakdown = score_pair(donor, recipient, fully_waited_days=settings.fully_waited_days)
    print(json.dumps(breakdown.to_dict(), indent=2))


def cmd_batch(args: argparse.Namespace) -> None:
    settings, registry, sink = _open(args)
    engine = BatchMatchingEngine(
        registry,
        board=StatisticsBoard(),
        sink=sink,
        acceptance_threshold=settings.acceptance_threshold,
        high_confidence_score=settings.high_confidence_score,
        fully_waited_days=settings.fully_waited_days,
    )
    result = engine.run_batch()
    print(f"Candidates above threshold: {result.candidates}")
    print(f"Matches found: {result.matches_found}")
    if result.ai_match_rate is not None:
        print(f"AI match rate: {result.ai_match_rate}%")
    for match in result.matches:
        _print_match(match)
    get_logger().log_metrics_summary()


def cmd_set_status(args: argparse.Namespace) -> None:
    _, registry, sink = _open(args)
    manager = MatchLifecycleManager(registry, sink=sink)
    match = manager.set_status(args.match_id, args.status, args.actor, outcome=args.outcome)
    _print_match(match)


def cmd_list_matches(args: argparse.Namespace) -> None:
    _, registry, _ = _open(args)
    matches = registry.list_matches(status=args.status)
    if not matches:
        print("No matches.")
        return
    print(f"Found {len(matches)} matches:\n")
    for match in matches:
        _print_match(match)


def cmd_stats(args: argparse.Namespace) -> None:
    _, registry, _ = _open(args)
    stats = get_statistics(registry, StatisticsBoard())
    print(f"Donors: {stats.total_donors}")
    print(f"Recipients: {stats.total_recipients}")
    print(f"Pending matches: {stats.pending_matches}")
    print(f"Completed matches: {stats.completed_matches}")
    print(f"Average score: {stats.average_score}")
    print(f"AI match rate: {stats.ai_match_rate}%")
    if stats.organ_type_distribution:
        print("Organ types:")
        for organ, count in sorted(stats.organ_type_distribution.items()):
            print(f"  {organ}: {count}")
    if stats.regional_distribution:
        print("Regions:")
        for region, count in sorted(stats.regional_distribution.items()):
            print(f"  {region}: {count}")


def main():
    load_env()
    parser = argparse.ArgumentParser(prog="organmatch", description="Donor / recipient matching engine")
    parser.add_argument("--version", action="store_true", help="Show version")

    subparsers = parser.add_subparsers(dest="command")

    def add_db(p):
        p.add_argument("--db", help="Path to SQLite database (default: ORGANMATCH_DB_PATH or data/organmatch.db)")

    ini = subparsers.add_parser("init-db", help="Create database tables")
    add_db(ini)
    ini.set_defaults(func=cmd_init_db)

    rdn = subparsers.add_parser("register-donor", help="Store a donor JSON record and match it")
    rdn.add_argument("--input", required=True, help="Path to donor JSON")
    add_db(rdn)
    rdn.set_defaults(func=cmd_register_donor)

    rrc = subparsers.add_parser("register-recipient", help="Store a recipient JSON record and match it")
    rrc.add_argument("--input", required=True, help="Path to recipient JSON")
    add_db(rrc)
    rrc.set_defaults(func=cmd_register_recipient)

    scr = subparsers.add_parser("score", help="Show the score breakdown for a donor/recipient pair")
    scr.add_argument("--donor-id", type=int, required=True)
    scr.add_argument("--recipient-id", type=int, required=True)
    add_db(scr)
    scr.set_defaults(func=cmd_score)

    bat = subparsers.add_parser("batch", help="Run a full batch matching pass")
    add_db(bat)
    bat.set_defaults(func=cmd_batch)

    sst = subparsers.add_parser("set-status", help="Approve, reject or complete a match")
    sst.add_argument("--match-id", type=int, required=True)
    sst.add_argument("--status", required=True, choices=["approved", "rejected", "completed"])
    sst.add_argument("--actor", required=True, help="Who is making the change")
    sst.add_argument("--outcome", help="Completion outcome note")
    add_db(sst)
    sst.set_defaults(func=cmd_set_status)

    lst = subparsers.add_parser("list-matches", help="List matches")
    lst.add_argument("--status", choices=["pending", "approved", "rejected", "completed"])
    add_db(lst)
    lst.set_defaults(func=cmd_list_matches)

    sts = subparsers.add_parser("stats", help="Show aggregate statistics")
    add_db(sts)
    sts.set_defaults(func=cmd_stats)

    args = parser.parse_args()

    if args.version:
        print(__version__)
        return

    if hasattr(args, "func"):
        try:
            args.func(args)
        except PersistenceFailure as e:
            print(f"Error: {e}")
            raise SystemExit(1)
        except MatchingError as e:
            print(f"Error: {e}")
            for detail in getattr(e, "errors", []):
                print(f" - {detail}")
            raise SystemExit(2)
        return

    parser.print_help()


if __name__ == "__main__":
    main()
