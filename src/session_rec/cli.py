import argparse
import json
import logging
from contextlib import contextmanager
from pathlib import Path

from tqdm import tqdm

from .analytics import FeedbackLoop, calculate_trends, generate_suggestions
from .behavior import BehaviorStore, EventKind, InteractionEvent, PageView, SearchClick, SearchEvent
from .catalog import CatalogItem, SqliteCatalog
from .config import ANALYTICS_WINDOW_DAYS, CONTENT_TYPES, DEFAULT_LIMIT, MAX_LIMIT
from .database import Database
from .profile import PreferenceAnalyzer
from .service import CONTEXT_TYPES, build_service
from .session_index import SqliteSessionIndex

logger = logging.getLogger(__name__)

IMPORT_CHUNK_SIZE = 500


@contextmanager
def _open_db(args: argparse.Namespace):
    db = Database(getattr(args, "db", None))
    db.init_schema()
    try:
        yield db
    finally:
        db.close()


def _emit_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def cmd_init_db(args: argparse.Namespace) -> None:
    with _open_db(args) as db:
        logger.info(f"Database initialized at {db.path}")


def cmd_import_catalog(args: argparse.Namespace) -> None:
    """Load catalog items from a JSON file (a list, or {"items": [...]})."""
    payload = json.loads(Path(args.file).read_text())
    records = payload.get("items", []) if isinstance(payload, dict) else payload

    items, skipped = [], 0
    for record in records:
        try:
            items.append(CatalogItem.from_dict(record))
        except (ValueError, TypeError) as e:
            skipped += 1
            logger.warning(f"Skipping catalog record: {e}")

    with _open_db(args) as db:
        catalog = SqliteCatalog(db)
        with tqdm(total=len(items), desc="Importing catalog", unit="item") as bar:
            for start in range(0, len(items), IMPORT_CHUNK_SIZE):
                chunk = items[start:start + IMPORT_CHUNK_SIZE]
                catalog.upsert(chunk)
                bar.update(len(chunk))

    logger.info(f"Imported {len(items)} catalog items ({skipped} skipped)")


def cmd_record(args: argparse.Namespace) -> None:
    """Record one behavior event, starting or resuming the session as needed."""
    with _open_db(args) as db:
        store = BehaviorStore(db)
        session = store.start_session(args.session, user_agent=args.user_agent, referrer=args.referrer)

        if args.kind == EventKind.PAGE_VIEW.value:
            event = PageView(
                session_id=session.session_id,
                page_type=args.page_type,
                entity_id=args.entity_id,
                url=args.url or "",
                dwell_time=args.dwell,
                scroll_depth=args.scroll,
            )
        elif args.kind == EventKind.SEARCH.value:
            clicks = tuple(
                SearchClick(result_id=rid, result_type=args.result_type, position=i)
                for i, rid in enumerate(args.clicked or [], 1)
            )
            event = SearchEvent(
                session_id=session.session_id,
                query=args.query,
                results_count=args.results,
                category=args.category,
                clicked_results=clicks,
            )
        else:
            event = InteractionEvent(
                session_id=session.session_id,
                content_type=args.content_type,
                content_id=args.content_id,
                interaction_type=args.interaction,
            )

        stored = store.append(event)

    if args.format == "json":
        _emit_json({"sessionId": session.session_id, "eventId": event.event_id, "stored": stored})
    else:
        logger.info(f"{'Recorded' if stored else 'Dropped'} {args.kind} event for session {session.session_id}")


def cmd_recommend(args: argparse.Namespace) -> None:
    with _open_db(args) as db:
        service = build_service(db, collaborative=not args.no_collaborative)
        try:
            response = service.recommend(
                limit=args.limit,
                types=args.types,
                context_type=args.context_type,
                context_id=args.context_id,
                session_id=args.session,
                context_item_type=args.context_item_type,
            )
        finally:
            service.close()

    if args.format == "json":
        _emit_json(response)
        return

    weights = response["context"]["weights"]
    logger.info(
        "\nWeights: " + ", ".join(f"{name}={value:.2f}" for name, value in weights.items())
    )
    logger.info(f"Top {response['total']} recommendations:")
    for i, rec in enumerate(response["recommendations"], 1):
        logger.info(f"{i}. [{rec['type']}] {rec['title']} - Score: {rec['score']:.2f} ({rec['algorithm']})")
        if rec["reasons"]:
            logger.info(f"   Why: {'; '.join(r['description'] for r in rec['reasons'])}")
    for name, info in response["metadata"]["strategies"].items():
        logger.debug(f"  {name}: {info}")


def cmd_feedback(args: argparse.Namespace) -> None:
    with _open_db(args) as db:
        service = build_service(db)
        try:
            ok = service.record_feedback(
                args.recommendation_id,
                args.content_id,
                args.content_type,
                args.position,
                args.action,
                dwell_time=args.dwell,
                session_id=args.session,
            )
        finally:
            service.close()
    logger.info("Feedback recorded" if ok else "Feedback dropped (see warnings)")


def cmd_profile(args: argparse.Namespace) -> None:
    """Show the preference profile and activity summary of one session."""
    with _open_db(args) as db:
        analyzer = PreferenceAnalyzer(BehaviorStore(db))
        profile = analyzer.analyze(args.session)
        summary = analyzer.summarize(args.session)
        if profile is not None and args.publish:
            SqliteSessionIndex(db).publish(profile)

    if args.format == "json":
        _emit_json({
            "profile": profile.summary() if profile else None,
            "activity": {
                "pageViews": summary.page_views,
                "searches": summary.searches,
                "interactions": summary.interactions,
                "averageDwellTime": summary.average_dwell_time,
                "mostViewed": summary.most_viewed,
                "mostSearched": summary.most_searched,
                "hourly": summary.hourly,
                "daily": summary.daily,
                "monthly": summary.monthly,
            },
        })
        return

    logger.info(f"\nSession {args.session}:")
    logger.info(f"  Page views: {summary.page_views}  Searches: {summary.searches}  "
                f"Interactions: {summary.interactions}")
    logger.info(f"  Average dwell: {summary.average_dwell_time / 1000:.1f}s")
    if profile is None:
        logger.info("  Not enough activity for a preference profile yet")
        return
    logger.info(f"  Engagement: {profile.engagement_level:.1f}/100")
    for pref in profile.content_preferences[:5]:
        logger.info(f"  {pref.key}: {pref.score:.1f} ({pref.interactions} interactions)")
    if profile.search_patterns:
        logger.info("  Searches: " + ", ".join(p.query for p in profile.search_patterns[:5]))


def cmd_analytics(args: argparse.Namespace) -> None:
    with _open_db(args) as db:
        loop = FeedbackLoop(db)
        metrics = loop.analyze(window_days=args.days)
        suggestions = generate_suggestions(metrics) if args.suggestions else []
        if args.snapshot:
            loop.record_snapshot(metrics)
        trends = calculate_trends(loop.historical(days=args.days)) if args.trends else {}

    if args.format == "json":
        _emit_json({
            "metrics": metrics.to_dict(),
            "suggestions": [vars(s) for s in suggestions],
            "trends": {name: vars(t) for name, t in trends.items()},
        })
        return

    logger.info(f"\nRecommendation analytics (last {args.days} days):")
    logger.info(f"  Feedback records: {metrics.total}")
    logger.info(f"  CTR: {metrics.click_through_rate:.1%}  VTR: {metrics.view_through_rate:.1%}  "
                f"Engagement: {metrics.engagement_rate:.1%}")
    logger.info(f"  Diversity: {metrics.diversity_score:.2f}")
    for name, perf in metrics.algorithm_performance.items():
        logger.info(f"  {name}: CTR {perf.click_through_rate:.1%}, conversion {perf.conversion_score:.3f}")
    for suggestion in suggestions:
        logger.info(f"  [{suggestion.priority}] {suggestion.description} "
                    f"(~{suggestion.expected_improvement:.0f}% expected)")
    for trend in trends.values():
        logger.info(f"  {trend.metric}: {trend.direction} ({trend.change:+.1%})")


def cmd_evict(args: argparse.Namespace) -> None:
    """Apply every retention window now."""
    with _open_db(args) as db:
        store = BehaviorStore(db)
        removed = {kind.value: store.evict(kind) for kind in EventKind}
        removed["session_aggregates"] = SqliteSessionIndex(db).evict()
        removed["feedback"] = FeedbackLoop(db).evict()
    for name, count in removed.items():
        logger.info(f"  {name}: {count} removed")


def cmd_stats(args: argparse.Namespace) -> None:
    """Show database statistics."""
    with _open_db(args) as db:
        counts = db.table_counts()
    logger.info("\nDatabase Statistics:")
    for table, count in counts.items():
        logger.info(f"  {table}: {count}")


def main():
    parser = argparse.ArgumentParser(description="Session-based hybrid recommender")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--db", help="Database path (default: $SESSION_REC_DB or data/session_rec.db)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create the database schema")
    init_parser.set_defaults(func=cmd_init_db)

    import_parser = subparsers.add_parser("import-catalog", help="Import catalog items from JSON")
    import_parser.add_argument("file", help="JSON file with catalog items")
    import_parser.set_defaults(func=cmd_import_catalog)

    record_parser = subparsers.add_parser("record", help="Record a behavior event")
    record_parser.add_argument("kind", choices=[k.value for k in EventKind])
    record_parser.add_argument("--session", help="Session id to resume (a new one is issued if missing or expired)")
    record_parser.add_argument("--user-agent", help="User agent, used to classify the device")
    record_parser.add_argument("--referrer")
    record_parser.add_argument("--page-type", default="movie", help="Page type for page views")
    record_parser.add_argument("--entity-id", help="Viewed entity id")
    record_parser.add_argument("--url")
    record_parser.add_argument("--dwell", type=int, default=0, help="Dwell time in milliseconds")
    record_parser.add_argument("--scroll", type=float, default=0.0, help="Scroll depth percent")
    record_parser.add_argument("--query", default="", help="Search query")
    record_parser.add_argument("--results", type=int, default=0, help="Number of search results")
    record_parser.add_argument("--category", help="Search category")
    record_parser.add_argument("--clicked", nargs="*", help="Clicked search result ids, in order")
    record_parser.add_argument("--result-type", default="movie", help="Type of clicked search results")
    record_parser.add_argument("--content-type", default="movie")
    record_parser.add_argument("--content-id")
    record_parser.add_argument("--interaction", default="view",
                               choices=["view", "like", "share", "favorite", "comment", "tag_click"])
    record_parser.add_argument("--format", choices=["text", "json"], default="text")
    record_parser.set_defaults(func=cmd_record)

    rec_parser = subparsers.add_parser("recommend", help="Get recommendations")
    rec_parser.add_argument("--session", help="Session id")
    rec_parser.add_argument("--limit", type=int, default=DEFAULT_LIMIT, help=f"Number of results (max {MAX_LIMIT})")
    rec_parser.add_argument("--types", nargs="+", choices=CONTENT_TYPES, help="Content types to include")
    rec_parser.add_argument("--context-type", choices=CONTEXT_TYPES, default="general")
    rec_parser.add_argument("--context-id", help="Focal item id for item_detail context")
    rec_parser.add_argument("--context-item-type", choices=CONTENT_TYPES, help="Focal item type (default: movie)")
    rec_parser.add_argument("--no-collaborative", action="store_true",
                            help="Disable cross-session similarity lookup")
    rec_parser.add_argument("--format", choices=["text", "json"], default="text")
    rec_parser.set_defaults(func=cmd_recommend)

    feedback_parser = subparsers.add_parser("feedback", help="Record feedback on a served recommendation")
    feedback_parser.add_argument("recommendation_id")
    feedback_parser.add_argument("content_id")
    feedback_parser.add_argument("content_type", choices=CONTENT_TYPES)
    feedback_parser.add_argument("position", type=int)
    feedback_parser.add_argument("action", choices=["view", "click", "dismiss"])
    feedback_parser.add_argument("--dwell", type=int, help="Dwell time in milliseconds")
    feedback_parser.add_argument("--session")
    feedback_parser.set_defaults(func=cmd_feedback)

    profile_parser = subparsers.add_parser("profile", help="Show a session's preference profile")
    profile_parser.add_argument("session")
    profile_parser.add_argument("--publish", action="store_true",
                                help="Publish the anonymized aggregate to the similarity index")
    profile_parser.add_argument("--format", choices=["text", "json"], default="text")
    profile_parser.set_defaults(func=cmd_profile)

    analytics_parser = subparsers.add_parser("analytics", help="Recommendation effectiveness report")
    analytics_parser.add_argument("--days", type=int, default=ANALYTICS_WINDOW_DAYS, help="Rolling window in days")
    analytics_parser.add_argument("--suggestions", action="store_true", help="Include tuning suggestions")
    analytics_parser.add_argument("--snapshot", action="store_true", help="Store a metrics snapshot")
    analytics_parser.add_argument("--trends", action="store_true", help="Compare stored snapshots")
    analytics_parser.add_argument("--format", choices=["text", "json"], default="text")
    analytics_parser.set_defaults(func=cmd_analytics)

    evict_parser = subparsers.add_parser("evict", help="Apply retention windows")
    evict_parser.set_defaults(func=cmd_evict)

    stats_parser = subparsers.add_parser("stats", help="Show database statistics")
    stats_parser.set_defaults(func=cmd_stats)

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    args.func(args)


if __name__ == "__main__":
    main()
