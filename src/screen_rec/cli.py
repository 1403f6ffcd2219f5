import argparse
import atexit
import json
import logging
import signal
import sys
import threading
import time
from dataclasses import asdict

import httpx

from . import database
from .config import (
    DEFAULT_COMPANION_N,
    DEFAULT_TOP_N,
    IMPORT_CHUNK_SIZE,
    ITEM_KINDS,
    NOTIFICATION_RETRIES,
    NOTIFICATION_WEBHOOK_URL,
    QUIZ_SIZE,
    RERANK_CANDIDATES_PER_USER,
)
from .errors import ScreenRecError
from .recommender import Recommendation, RecommendationEngine
from .utils import chunked, retry_with_backoff

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(database.close_pool)


@retry_with_backoff(max_retries=NOTIFICATION_RETRIES, initial_delay=1.0, exceptions=(httpx.HTTPError,))
def _post_notification(url: str, message: str) -> None:
    response = httpx.post(url, json={"content": message}, timeout=10)
    response.raise_for_status()


def send_notification(message: str) -> None:
    """Send a notification to a configured webhook (Discord/Slack-style)."""
    if not NOTIFICATION_WEBHOOK_URL:
        return
    try:
        _post_notification(NOTIFICATION_WEBHOOK_URL, message)
    except httpx.HTTPError as exc:
        logger.warning(f"Failed to send notification: {exc}")


def _install_cancel_handler() -> tuple[threading.Event, object]:
    """
    Set the returned event on the first Ctrl-C; a second one aborts immediately.
    Also returns the previous handler so it can be restored.
    """
    cancel = threading.Event()

    def _handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        logger.warning("Cancellation requested, stopping at the next checkpoint (Ctrl-C again to abort)")
        cancel.set()

    previous = signal.signal(signal.SIGINT, _handler)
    return cancel, previous


def _run_job(name: str, job) -> None:
    """Run an offline job with cancellation, timing and a completion notification."""
    cancel, previous = _install_cancel_handler()
    started = time.time()
    try:
        result = job(cancel)
    finally:
        signal.signal(signal.SIGINT, previous)
    elapsed = time.time() - started
    logger.info(f"{name} finished in {elapsed:.1f}s")
    send_notification(f"screen-rec: {name} finished in {elapsed:.1f}s ({result})")


def _non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be zero or more, got {value}")
    return number


def _engine(args: argparse.Namespace) -> RecommendationEngine:
    return RecommendationEngine(snapshot_dir=getattr(args, "snapshot_dir", None))


def cmd_init_db(args: argparse.Namespace) -> None:
    database.init_db()
    logger.info(f"Initialized database at {database.DB_PATH}")


def cmd_import(args: argparse.Namespace) -> None:
    """Import catalog items, cast members and library entries from a JSON file."""
    with open(args.file, "r", encoding="utf-8") as f:
        data = json.load(f)

    database.init_db()
    for chunk in chunked(data.get("cast", []), IMPORT_CHUNK_SIZE):
        database.upsert_cast_members(chunk)
    for chunk in chunked(data.get("items", []), IMPORT_CHUNK_SIZE):
        database.upsert_items(chunk)

    entries = data.get("library", [])
    with database.get_db():
        for entry in entries:
            user_id = str(entry["user_id"])
            if entry.get("item_id") is not None:
                database.add_library_item(user_id, str(entry["item_id"]))
                if entry.get("deleted"):
                    database.remove_library_entry(user_id, item_id=str(entry["item_id"]))
            elif entry.get("cast_id") is not None:
                database.add_library_cast(user_id, str(entry["cast_id"]))
                if entry.get("deleted"):
                    database.remove_library_entry(user_id, cast_id=str(entry["cast_id"]))

    logger.info(
        f"Imported {len(data.get('items', []))} items, {len(data.get('cast', []))} cast members "
        f"and {len(entries)} library entries from {args.file}"
    )


def cmd_build_cache(args: argparse.Namespace) -> None:
    engine = _engine(args)
    _run_job(
        "build-cache",
        lambda cancel: f"{len(engine.build_feature_cache(cancel=cancel, show_progress=True))} items",
    )


def cmd_build_index(args: argparse.Namespace) -> None:
    engine = _engine(args)
    _run_job(
        "build-index",
        lambda cancel: f"{len(engine.build_content_index(cancel=cancel))} vectors",
    )


def cmd_train_cf(args: argparse.Namespace) -> None:
    engine = _engine(args)
    hyperparams = {}
    if args.factors:
        hyperparams["n_factors"] = args.factors
    if args.epochs:
        hyperparams["n_epochs"] = args.epochs

    def _job(cancel):
        model = engine.train_collaborative_model(cancel=cancel, show_progress=True, **hyperparams)
        return f"{len(model.user_index)} users, {len(model.item_index)} items"

    _run_job("train-cf", _job)


def cmd_train_reranker(args: argparse.Namespace) -> None:
    engine = _engine(args)

    def _job(cancel):
        reranker = engine.train_reranker(
            candidates_per_user=args.candidates_per_user, cancel=cancel, show_progress=True,
        )
        return f"{reranker.metadata.get('n_rows', 0)} rows"

    _run_job("train-reranker", _job)


def _log_items(title: str, items: list[Recommendation]) -> None:
    logger.info(f"\n{title}:")
    for i, item in enumerate(items, 1):
        flag = " [in library]" if item.in_library else ""
        logger.info(f"{i}. {item.name} ({item.kind}, rating {item.rating:.1f}) - Score: {item.score:.3f}{flag}")


def cmd_recommend(args: argparse.Namespace) -> None:
    engine = _engine(args)
    try:
        result = engine.recommend_for_user(args.user_id, top_n=args.limit, companions_n=args.companions)
    finally:
        engine.close()

    if args.format == "json":
        logger.info(json.dumps(asdict(result), indent=2))
        return

    _log_items(f"Top {len(result.items)} recommendations for {args.user_id}", result.items)
    for label, entities in (("Actors", result.actors), ("Directors", result.directors)):
        logger.info(f"\n{label} you may like:")
        for i, entity in enumerate(entities, 1):
            marked = " [marked]" if entity.marked else ""
            logger.info(f"{i}. {entity.name} - Score: {entity.score:.3f}{marked}")


def cmd_similar(args: argparse.Namespace) -> None:
    engine = _engine(args)
    try:
        items = engine.similar_to_item(args.item_id, user_id=args.user, top_n=args.limit)
    finally:
        engine.close()

    if args.format == "json":
        logger.info(json.dumps([asdict(i) for i in items], indent=2))
        return
    _log_items(f"Items similar to {args.item_id}", items)


def cmd_similar_entity(args: argparse.Namespace) -> None:
    engine = _engine(args)
    result = engine.similar_to_entity(args.cast_id, user_id=args.user, top_n=args.limit)

    if args.format == "json":
        logger.info(json.dumps(asdict(result), indent=2))
        return

    logger.info(f"\n{result.entity.role.title()}s similar to {result.entity.name}:")
    for i, entity in enumerate(result.similar, 1):
        logger.info(f"{i}. {entity.name} - {int(entity.score)} shared items")
    _log_items("Top items featuring them", result.items)


def cmd_quiz_list(args: argparse.Namespace) -> None:
    """List random popular items for a new user to pick from."""
    picks = database.load_quiz_candidates(kind=args.kind, limit=args.limit, seed=args.seed)

    if args.format == "json":
        logger.info(json.dumps(picks, indent=2))
        return

    logger.info(f"\n{len(picks)} quiz picks:")
    for i, pick in enumerate(picks, 1):
        genres = ", ".join(pick["genres"])
        logger.info(f"{i}. [{pick['id']}] {pick['name']} ({pick['kind']}, rating {pick['rating']:.1f}) {genres}")


def cmd_quiz_save(args: argparse.Namespace) -> None:
    saved = database.save_quiz_picks(args.user_id, args.item_ids)
    logger.info(f"Added {saved} quiz picks to {args.user_id}'s library")


def cmd_stats(args: argparse.Namespace) -> None:
    """Show catalog and snapshot statistics."""
    stats = database.catalog_stats()
    logger.info("\nCatalog Statistics:")
    for key, value in stats.items():
        logger.info(f"  {key.replace('_', ' ').capitalize()}: {value}")

    engine = _engine(args)
    logger.info("\nSnapshots:")
    for label, path in (
        ("Feature cache", engine.feature_cache.path),
        ("Content index", engine.content_index.path),
        ("Collaborative model", engine.cf_model_path),
        ("Reranker", engine.reranker_path),
    ):
        logger.info(f"  {label}: {'present' if path.exists() else 'missing'} ({path})")


def main():
    parser = argparse.ArgumentParser(description="Hybrid film and series recommender")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--snapshot-dir", help="Directory holding snapshots and models")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create the catalog tables")
    init_parser.set_defaults(func=cmd_init_db)

    import_parser = subparsers.add_parser("import", help="Import catalog and library data from JSON")
    import_parser.add_argument("file", help="JSON file with items, cast and library lists")
    import_parser.set_defaults(func=cmd_import)

    cache_parser = subparsers.add_parser("build-cache", help="Rebuild the item feature cache")
    cache_parser.set_defaults(func=cmd_build_cache)

    index_parser = subparsers.add_parser("build-index", help="Rebuild the content vector index")
    index_parser.set_defaults(func=cmd_build_index)

    cf_parser = subparsers.add_parser("train-cf", help="Train the collaborative model")
    cf_parser.add_argument("--factors", type=int, help="Latent factors (default from config)")
    cf_parser.add_argument("--epochs", type=int, help="Training epochs (default from config)")
    cf_parser.set_defaults(func=cmd_train_cf)

    rerank_parser = subparsers.add_parser("train-reranker", help="Train the reranker")
    rerank_parser.add_argument("--candidates-per-user", type=int, default=RERANK_CANDIDATES_PER_USER)
    rerank_parser.set_defaults(func=cmd_train_reranker)

    rec_parser = subparsers.add_parser("recommend", help="Recommend items for a user")
    rec_parser.add_argument("user_id")
    rec_parser.add_argument("--limit", type=_non_negative_int, default=DEFAULT_TOP_N)
    rec_parser.add_argument("--companions", type=_non_negative_int, default=DEFAULT_COMPANION_N,
                            help="Actors and directors to suggest")
    rec_parser.add_argument("--format", choices=["text", "json"], default="text")
    rec_parser.set_defaults(func=cmd_recommend)

    similar_parser = subparsers.add_parser("similar", help="Find items similar to an item")
    similar_parser.add_argument("item_id")
    similar_parser.add_argument("--user", help="Flag results already in this user's library")
    similar_parser.add_argument("--limit", type=_non_negative_int, default=DEFAULT_TOP_N)
    similar_parser.add_argument("--format", choices=["text", "json"], default="text")
    similar_parser.set_defaults(func=cmd_similar)

    entity_parser = subparsers.add_parser("similar-entity", help="Find cast or crew similar to a member")
    entity_parser.add_argument("cast_id")
    entity_parser.add_argument("--user", help="Flag results already in this user's library")
    entity_parser.add_argument("--limit", type=_non_negative_int, default=DEFAULT_TOP_N)
    entity_parser.add_argument("--format", choices=["text", "json"], default="text")
    entity_parser.set_defaults(func=cmd_similar_entity)

    quiz_parser = subparsers.add_parser("quiz", help="Onboarding quiz for users without history")
    quiz_subparsers = quiz_parser.add_subparsers(dest="quiz_command", required=True)

    quiz_list_parser = quiz_subparsers.add_parser("list", help="Draw random popular items to pick from")
    quiz_list_parser.add_argument("--kind", choices=ITEM_KINDS, help="Only movies or only series")
    quiz_list_parser.add_argument("--limit", type=_non_negative_int, default=QUIZ_SIZE)
    quiz_list_parser.add_argument("--seed", type=int, help="Seed for a reproducible draw")
    quiz_list_parser.add_argument("--format", choices=["text", "json"], default="text")
    quiz_list_parser.set_defaults(func=cmd_quiz_list)

    quiz_save_parser = quiz_subparsers.add_parser("save", help="Add quiz picks to a user's library")
    quiz_save_parser.add_argument("user_id")
    quiz_save_parser.add_argument("item_ids", nargs="+")
    quiz_save_parser.set_defaults(func=cmd_quiz_save)

    stats_parser = subparsers.add_parser("stats", help="Show catalog and snapshot statistics")
    stats_parser.set_defaults(func=cmd_stats)

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        args.func(args)
    except ScreenRecError as exc:
        logger.error(str(exc))
        sys.exit(1)


if __name__ == "__main__":
    main()
