"""CLI for offline matching, serving the API, and ledger maintenance."""

import argparse
import sys
from datetime import timedelta

import pandas as pd
import structlog

from stockgate.config import AppConfig
from stockgate.errors import AmbiguousCatalogError
from stockgate.logging import configure_logging
from stockgate.resolver import CandidateResolver


def _config(args: argparse.Namespace) -> AppConfig:
    config = AppConfig.from_env()
    if getattr(args, "database_url", None):
        config.database.url = args.database_url
    return config


def cmd_match(args: argparse.Namespace) -> None:
    from stockgate.io import candidates_frame, read_catalog, read_lines, write_candidates

    log = structlog.get_logger()
    log.info("load_files_start", catalog=args.catalog, lines=args.lines)
    catalog = read_catalog(args.catalog)
    lines = read_lines(args.lines)
    log.info("files_loaded", catalog_count=len(catalog), line_count=len(lines))

    resolver = CandidateResolver()
    try:
        candidates = resolver.resolve_lines(lines, catalog)
    except AmbiguousCatalogError as e:
        log.error("ambiguous_catalog", name=e.name, entry_ids=e.entry_ids)
        sys.exit(f"Catalog error: {e}")

    df_out = candidates_frame(lines, candidates, catalog)
    if args.show:
        _show_candidates(df_out)
    _print_summary(resolver)
    write_candidates(df_out, args.output)
    print(f"\nSaved to: {args.output}")


def _show_candidates(df: pd.DataFrame) -> None:
    if df.empty:
        print("\n=== No lines ===")
        return
    print(f"\n=== Candidates ({len(df)}) ===")
    print(df[["name", "matched_name", "tier"]].to_string(index=False))


def _print_summary(resolver: CandidateResolver) -> None:
    s = resolver.stats
    parts = [f"{tier}={count}" for tier, count in s.tiers.items()]
    print(f"\nResults: {', '.join(parts)}")
    print(f"Matched: {s.matched}/{s.total}")
    review = s.tiers["LOW"] + s.tiers["MANUAL"]
    if review:
        print(f"Need review: {review}")


def cmd_serve(args: argparse.Namespace) -> None:
    import uvicorn

    from stockgate.db import init_db, make_engine, make_session_factory
    from stockgate.server import build_services, create_app

    log = structlog.get_logger()
    config = _config(args)
    engine = make_engine(config.database.url, echo=config.database.echo)
    init_db(engine)

    chat_model = text_model = None
    if config.llm.enabled:
        from stockgate.gemini import GeminiChatProvider, GeminiTextProvider, _make_client

        log.info("gemini_client_init")
        client = _make_client()
        chat_model = GeminiChatProvider(config.llm, client)
        text_model = GeminiTextProvider(config.llm, client)
        log.info(
            "gemini_providers_enabled",
            chat_model=config.llm.chat_model,
            text_model=config.llm.text_model,
        )
    else:
        log.warning("llm_disabled", hint="set AI_ENABLED=1 to enable the assistant")

    services = build_services(config, make_session_factory(engine), chat_model, text_model)
    app = create_app(services)
    port = args.port or config.server.port
    log.info("server_start", host=args.host, port=port, database=config.database.url)
    uvicorn.run(app, host=args.host, port=port, log_level="warning")


def cmd_init_db(args: argparse.Namespace) -> None:
    from stockgate.db import init_db, make_engine

    config = _config(args)
    init_db(make_engine(config.database.url))
    print(f"Tables created in {config.database.url}")


def cmd_reconcile(args: argparse.Namespace) -> None:
    """List actions that were confirmed but never reached an outcome."""
    from stockgate.db import make_engine, make_session_factory
    from stockgate.ledger import ActionLedger
    from stockgate.sql_store import SqlActionRepository

    config = _config(args)
    repository = SqlActionRepository(make_session_factory(make_engine(config.database.url)))
    stale = ActionLedger(repository).stale_confirmed(timedelta(minutes=args.older_than_minutes))

    if not stale:
        print("No actions stuck in CONFIRMED.")
        return
    print(f"=== Actions stuck in CONFIRMED ({len(stale)}) ===")
    df = pd.DataFrame([
        {
            "id": a.id,
            "company_id": a.company_id,
            "user_id": a.user_id,
            "action_type": a.action_type,
            "confirmed_at": a.confirmed_at.isoformat() if a.confirmed_at else "",
        }
        for a in stale
    ])
    print(df.to_string(index=False))
    print("\nCheck each against the inventory before resolving it by hand.")


def main() -> None:
    parent_parser = argparse.ArgumentParser(add_help=False)
    parent_parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Set logging level (default: INFO)",
    )

    db_parser = argparse.ArgumentParser(add_help=False)
    db_parser.add_argument(
        "--database-url",
        help="SQLAlchemy database URL (default: STOCKGATE_DATABASE_URL or sqlite:///stockgate.db)",
    )

    parser = argparse.ArgumentParser(
        description="Confirmation-gated inventory assistant",
        parents=[parent_parser],
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    match_parser = subparsers.add_parser("match", parents=[parent_parser], help="Match BOM lines to a catalog file")
    match_parser.add_argument("--catalog", required=True, help="Catalog file (CSV or Excel)")
    match_parser.add_argument("--lines", required=True, help="BOM lines file (CSV or Excel)")
    match_parser.add_argument("--output", default="match_results.xlsx", help="Output file path")
    match_parser.add_argument("--show", action="store_true", help="Display candidates on screen")
    match_parser.set_defaults(func=cmd_match)

    serve_parser = subparsers.add_parser("serve", parents=[parent_parser, db_parser], help="Run the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=None, help="Server port (default: PORT or 8000)")
    serve_parser.set_defaults(func=cmd_serve)

    init_parser = subparsers.add_parser("init-db", parents=[parent_parser, db_parser], help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    reconcile_parser = subparsers.add_parser(
        "reconcile", parents=[parent_parser, db_parser], help="List actions stuck in CONFIRMED"
    )
    reconcile_parser.add_argument("--older-than-minutes", type=int, default=15, help="Age threshold")
    reconcile_parser.set_defaults(func=cmd_reconcile)

    args = parser.parse_args()
    configure_logging(args.log_level)
    args.func(args)


if __name__ == "__main__":
    main()
