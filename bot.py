import os
import sqlite3
import asyncio
from functools import partial

import discord
from discord.ext import commands

from clash.api import ClashApi
from config.settings import ClanSyncSettings
from config.settings import load_settings
from db.migrate import apply_sqlite_migrations
from jobs.role_sync import role_sync_tick
from jobs.scheduler import JobScheduler
from jobs.war import period_tracking_tick
from links.store import fetch_linked_accounts_sync
from misc.discord_roles import DiscordRoleSink
from misc.discord_roles import role_ids_from_settings
from misc.war_announcements import PeriodStartAnnouncer
from misc.war_summary import PeriodSummarySink
from reconcile.history import SnapshotHistoryStore
from reconcile.role_sync import RoleReconciler
from reconcile.rollover import PeriodRolloverTracker


REQUIRED_TABLES = [
    ("user_links", ["discord_user_id", "player_tag", "player_name", "created_at_utc"]),
    ("job_state", ["key", "value", "schema_version", "updated_at_utc"]),
    ("audit_log", ["id", "created_at_utc", "type", "message"]),
    ("war_history", ["war_key", "clan_tag", "season_id", "section_index", "created_date", "rank", "raw_json"]),
]


def _safe_table_info(cur, table: str):
    try:
        cur.execute(f"PRAGMA table_info({table})")
        rows = cur.fetchall()
        # rows: (cid, name, type, notnull, dflt_value, pk)
        return [r[1] for r in rows]
    except Exception as e:
        return [f"<error: {e}>"]


def _schema_has_columns(cur, table: str, required: list[str]) -> tuple[bool, list[str]]:
    cols = set(_safe_table_info(cur, table))
    missing = [c for c in required if c not in cols]
    return (len(missing) == 0, missing)


def init_db(db_path: str) -> sqlite3.Connection:
    # check_same_thread=False because discord.py event loop + to_thread usage
    conn = sqlite3.connect(db_path, check_same_thread=False)
    cur = conn.cursor()

    cur.execute("PRAGMA journal_mode=WAL;")
    cur.execute("PRAGMA synchronous=NORMAL;")
    repo_root = os.path.dirname(os.path.abspath(__file__))
    migrations_dir = os.path.join(repo_root, "migrations")
    apply_sqlite_migrations(conn, migrations_dir)

    for tbl, req in REQUIRED_TABLES:
        ok_t, missing_t = _schema_has_columns(cur, tbl, req)
        print(f"[DB] {tbl} schema OK={ok_t} missing={missing_t}")

    conn.commit()
    return conn


class ClanSyncBot(commands.Bot):
    scheduler: JobScheduler | None = None
    clash_api: ClashApi | None = None

    async def close(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
        if self.clash_api is not None:
            await self.clash_api.close()
        await super().close()


def build_bot(settings: ClanSyncSettings, db_conn: sqlite3.Connection) -> ClanSyncBot:
    intents = discord.Intents.default()
    intents.members = True
    bot = ClanSyncBot(command_prefix="!", intents=intents)

    db_lock = asyncio.Lock()
    clash_api = ClashApi(token=settings.clash_api_token)
    history = SnapshotHistoryStore(db_lock=db_lock, db_conn=db_conn)
    summary_sink = PeriodSummarySink(
        bot=bot,
        channel_id=settings.war_logs_channel_id,
        history=history,
        db_lock=db_lock,
        db_conn=db_conn,
    )
    tracker = PeriodRolloverTracker(
        db_lock=db_lock,
        db_conn=db_conn,
        history=history,
        on_period_closed=summary_sink,
        allotment=settings.decks_per_day,
    )
    announcer = None
    if settings.announcements_channel_id > 0:
        announcer = PeriodStartAnnouncer(
            bot=bot,
            channel_id=settings.announcements_channel_id,
            db_lock=db_lock,
            db_conn=db_conn,
        )
    scheduler = JobScheduler(db_lock=db_lock, db_conn=db_conn)

    @bot.event
    async def on_ready():
        print(f"[Bot] Logged in as {bot.user} (id={bot.user.id if bot.user else '?'})")
        if scheduler.running:
            # on_ready fires again after reconnects
            return

        guild = bot.get_guild(settings.guild_id)
        if guild is None:
            guild = await bot.fetch_guild(settings.guild_id)

        role_sink = DiscordRoleSink(
            guild,
            role_ids_from_settings(settings),
            restricted_role_id=settings.role_non_member_id,
        )
        reconciler = RoleReconciler(db_lock=db_lock, db_conn=db_conn, role_sink=role_sink)

        if not scheduler.job_names:
            scheduler.add_job(
                "role_sync",
                partial(
                    role_sync_tick,
                    clan_tag=settings.clan_tag,
                    clash_api=clash_api,
                    reconciler=reconciler,
                    db_lock=db_lock,
                    db_conn=db_conn,
                    fetch_linked_accounts_sync=fetch_linked_accounts_sync,
                ),
                settings.role_sync_interval_seconds,
            )
            scheduler.add_job(
                "period_tracking",
                partial(
                    period_tracking_tick,
                    clan_tag=settings.clan_tag,
                    clash_api=clash_api,
                    tracker=tracker,
                    db_lock=db_lock,
                    db_conn=db_conn,
                    on_period_observed=announcer,
                ),
                settings.war_poll_interval_seconds,
            )
        scheduler.start()

    bot.scheduler = scheduler
    bot.clash_api = clash_api
    return bot


def main() -> None:
    settings = load_settings()
    db_conn = init_db(settings.sqlite_path)
    print(f"[DB] Using SQLITE_PATH={settings.sqlite_path}")
    print(f"[Bot] clan={settings.clan_tag} guild={settings.guild_id}")

    bot = build_bot(settings, db_conn)
    try:
        bot.run(settings.discord_token)
    finally:
        db_conn.close()


if __name__ == "__main__":
    main()
