"""Engagement engine tables.

Creates users, xp_ledger, user_gamification, streak_states, streak_events,
leaderboard_snapshots, challenges, challenge_progress, wishlist_items,
wishlist_alerts and notifications.

Revision ID: 001_gamification_tables
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_gamification_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Users ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id BIGSERIAL PRIMARY KEY,
            email VARCHAR(320) UNIQUE NOT NULL,
            display_name VARCHAR(64),
            show_on_leaderboard BOOLEAN NOT NULL DEFAULT true,
            lifetime_spend NUMERIC(12, 2) NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- XP Ledger ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS xp_ledger (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            amount INTEGER NOT NULL,
            kind VARCHAR(16) NOT NULL DEFAULT 'earn',
            source VARCHAR(64) NOT NULL,
            source_id VARCHAR(128),
            reward_type VARCHAR(16),
            description VARCHAR(256),
            idempotency_key VARCHAR(256) UNIQUE NOT NULL,
            created_at TIMESTAMPTZ NOT NULL
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_xp_ledger_user_created
        ON xp_ledger(user_id, created_at)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_xp_ledger_earn_created
        ON xp_ledger(created_at)
        WHERE kind = 'earn'
    """)

    # --- User Gamification (denormalized balances) ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_gamification (
            user_id BIGINT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
            total_xp BIGINT NOT NULL DEFAULT 0,
            redeemed_xp BIGINT NOT NULL DEFAULT 0,
            expired_xp BIGINT NOT NULL DEFAULT 0,
            level INTEGER NOT NULL DEFAULT 1,
            level_title VARCHAR(64) NOT NULL DEFAULT 'Newcomer',
            achievements_count INTEGER NOT NULL DEFAULT 0,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_user_gamification_available
                CHECK (total_xp - redeemed_xp - expired_xp >= 0)
        )
    """)

    # --- Streaks ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS streak_states (
            user_id BIGINT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
            current_streak INTEGER NOT NULL DEFAULT 0,
            longest_streak INTEGER NOT NULL DEFAULT 0,
            freeze_tokens INTEGER NOT NULL DEFAULT 0,
            auto_use_freeze BOOLEAN NOT NULL DEFAULT true,
            last_activity_at TIMESTAMPTZ,
            frozen_through DATE,
            streak_started_on DATE,
            last_scanned_on DATE,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_streak_freeze_tokens
                CHECK (freeze_tokens >= 0 AND freeze_tokens <= 3)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_streak_states_current
        ON streak_states(current_streak)
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS streak_events (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            event_type VARCHAR(32) NOT NULL,
            streak_day INTEGER NOT NULL DEFAULT 0,
            reason VARCHAR(256),
            created_at TIMESTAMPTZ NOT NULL
        )
    """)

    # --- Leaderboard ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS leaderboard_snapshots (
            id BIGSERIAL PRIMARY KEY,
            period_type VARCHAR(16) NOT NULL,
            period_start DATE NOT NULL,
            period_end DATE NOT NULL,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            rank INTEGER NOT NULL,
            previous_rank INTEGER,
            xp_total BIGINT NOT NULL DEFAULT 0,
            xp_earned_in_period BIGINT NOT NULL DEFAULT 0,
            level INTEGER NOT NULL DEFAULT 1,
            streak_days INTEGER NOT NULL DEFAULT 0,
            achievements_count INTEGER NOT NULL DEFAULT 0,
            computed_at TIMESTAMPTZ NOT NULL,
            CONSTRAINT lb_snapshots_period_user_key UNIQUE (period_type, period_start, user_id),
            CONSTRAINT lb_snapshots_period_rank_key UNIQUE (period_type, period_start, rank)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_lb_snapshots_type_computed
        ON leaderboard_snapshots(period_type, computed_at DESC)
    """)

    # --- Challenges ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS challenges (
            id BIGSERIAL PRIMARY KEY,
            slug VARCHAR(64) UNIQUE NOT NULL,
            title VARCHAR(128) NOT NULL,
            type VARCHAR(16) NOT NULL,
            requirements JSONB NOT NULL DEFAULT '{}',
            xp_reward INTEGER NOT NULL DEFAULT 0,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS challenge_progress (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            challenge_id BIGINT NOT NULL REFERENCES challenges(id) ON DELETE CASCADE,
            progress INTEGER NOT NULL DEFAULT 0,
            target INTEGER NOT NULL DEFAULT 1,
            status VARCHAR(16) NOT NULL DEFAULT 'in_progress',
            started_at TIMESTAMPTZ NOT NULL,
            completed_at TIMESTAMPTZ,
            CONSTRAINT challenge_progress_user_challenge_key UNIQUE (user_id, challenge_id),
            CONSTRAINT ck_challenge_progress_bounds CHECK (progress >= 0 AND progress <= target)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_challenge_progress_active
        ON challenge_progress(user_id)
        WHERE status = 'in_progress'
    """)

    # --- Wishlist ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS wishlist_items (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            product_id VARCHAR(128) NOT NULL,
            product_name VARCHAR(256) NOT NULL DEFAULT '',
            price_when_added NUMERIC(10, 2) NOT NULL,
            current_price NUMERIC(10, 2) NOT NULL,
            alert_on_price_drop BOOLEAN NOT NULL DEFAULT true,
            alert_on_restock BOOLEAN NOT NULL DEFAULT true,
            priority VARCHAR(8) NOT NULL DEFAULT 'medium',
            added_at TIMESTAMPTZ NOT NULL,
            CONSTRAINT wishlist_items_user_product_key UNIQUE (user_id, product_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_wishlist_items_product
        ON wishlist_items(product_id)
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS wishlist_alerts (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            wishlist_item_id BIGINT REFERENCES wishlist_items(id) ON DELETE SET NULL,
            type VARCHAR(32) NOT NULL,
            message VARCHAR(256) NOT NULL,
            discount INTEGER,
            expires_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL,
            read_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_wishlist_alerts_user
        ON wishlist_alerts(user_id, created_at DESC)
    """)

    # --- Notifications ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS notifications (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            type VARCHAR(32) NOT NULL,
            subtype VARCHAR(64) NOT NULL,
            title VARCHAR(256) NOT NULL,
            description TEXT,
            metadata JSONB NOT NULL DEFAULT '{}',
            dedupe_key VARCHAR(256) UNIQUE,
            read BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_notifications_user_created
        ON notifications(user_id, created_at DESC)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_notifications_unread
        ON notifications(user_id)
        WHERE read = false
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS notifications CASCADE")
    op.execute("DROP TABLE IF EXISTS wishlist_alerts CASCADE")
    op.execute("DROP TABLE IF EXISTS wishlist_items CASCADE")
    op.execute("DROP TABLE IF EXISTS challenge_progress CASCADE")
    op.execute("DROP TABLE IF EXISTS challenges CASCADE")
    op.execute("DROP TABLE IF EXISTS leaderboard_snapshots CASCADE")
    op.execute("DROP TABLE IF EXISTS streak_events CASCADE")
    op.execute("DROP TABLE IF EXISTS streak_states CASCADE")
    op.execute("DROP TABLE IF EXISTS user_gamification CASCADE")
    op.execute("DROP TABLE IF EXISTS xp_ledger CASCADE")
    op.execute("DROP TABLE IF EXISTS users CASCADE")
