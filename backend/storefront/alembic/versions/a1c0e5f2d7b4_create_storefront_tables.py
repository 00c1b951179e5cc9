"""Create storefront engine tables (Snowflake BIGINT IDs)

Revision ID: a1c0e5f2d7b4
Revises:
Create Date: 2026-10-17

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "a1c0e5f2d7b4"
down_revision = None
branch_labels = None
depends_on = None


def _id() -> sa.Column:
    return sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False)


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _fk(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.BigInteger(), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "users",
        _id(),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "products",
        _id(),
        sa.Column("slug", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _ts("created_at"),
    )
    op.create_index("ix_products_slug", "products", ["slug"], unique=True)

    op.create_table(
        "product_versions",
        _id(),
        _fk("product_id"),
        sa.Column("slug", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("pricing_mode", sa.String(length=16), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("min_price_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column(
            "licensing_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")
        ),
        sa.Column("activation_limit", sa.Integer(), nullable=True),
        sa.Column("activation_overflow", sa.String(length=16), nullable=True),
        sa.Column("github_repo", sa.String(length=200), nullable=True),
        sa.Column("revoke_on_partial_refund", sa.Boolean(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _ts("created_at"),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("product_id", "slug", name="uq_product_versions_product_slug"),
    )
    op.create_index("ix_product_versions_product_id", "product_versions", ["product_id"])

    op.create_table(
        "discounts",
        _id(),
        sa.Column("code", sa.String(length=64), nullable=False),
        _fk("product_id"),
        _fk("version_id", nullable=True),
        sa.Column("discount_type", sa.String(length=16), nullable=False),
        sa.Column("value", sa.Integer(), nullable=False),
        _ts("expires_at", nullable=True),
        sa.Column("max_redemptions", sa.Integer(), nullable=True),
        sa.Column("redemption_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(length=16), nullable=False),
        _ts("created_at"),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["version_id"], ["product_versions.id"]),
    )
    op.create_index("ix_discounts_code", "discounts", ["code"], unique=True)
    op.create_index("ix_discounts_product_id", "discounts", ["product_id"])
    op.create_index("ix_discounts_version_id", "discounts", ["version_id"])

    op.create_table(
        "affiliates",
        _id(),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("payout_percent", sa.Numeric(5, 2), nullable=False),
        sa.Column("commission_cap_cents", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        _ts("created_at"),
    )
    op.create_index("ix_affiliates_code", "affiliates", ["code"], unique=True)

    op.create_table(
        "checkout_attempts",
        _id(),
        sa.Column("attempt_id", sa.String(length=128), nullable=False),
        _fk("product_id"),
        _fk("version_id"),
        sa.Column("pricing_mode", sa.String(length=16), nullable=False),
        sa.Column("subtotal_cents", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        _fk("discount_id", nullable=True),
        sa.Column("discount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _fk("affiliate_id", nullable=True),
        sa.Column("customer_email", sa.String(length=320), nullable=True),
        sa.Column("success_url", sa.String(length=1024), nullable=True),
        sa.Column("cancel_url", sa.String(length=1024), nullable=True),
        sa.Column("provider_session_id", sa.String(length=255), nullable=True),
        sa.Column("checkout_url", sa.String(length=2048), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.ForeignKeyConstraint(["version_id"], ["product_versions.id"]),
        sa.ForeignKeyConstraint(["discount_id"], ["discounts.id"]),
        sa.ForeignKeyConstraint(["affiliate_id"], ["affiliates.id"]),
        sa.UniqueConstraint(
            "attempt_id", "product_id", "version_id", name="uq_checkout_attempts_attempt"
        ),
        sa.UniqueConstraint(
            "provider_session_id", name="uq_checkout_attempts_provider_session_id"
        ),
    )
    op.create_index("ix_checkout_attempts_status", "checkout_attempts", ["status"])
    op.create_index("ix_checkout_attempts_product_id", "checkout_attempts", ["product_id"])
    op.create_index("ix_checkout_attempts_version_id", "checkout_attempts", ["version_id"])
    op.create_index("ix_checkout_attempts_discount_id", "checkout_attempts", ["discount_id"])
    op.create_index("ix_checkout_attempts_affiliate_id", "checkout_attempts", ["affiliate_id"])

    op.create_table(
        "orders",
        _id(),
        _fk("user_id"),
        _fk("checkout_attempt_id", nullable=True),
        sa.Column("provider_session_id", sa.String(length=255), nullable=True),
        sa.Column("provider_payment_id", sa.String(length=255), nullable=True),
        sa.Column("subtotal_cents", sa.Integer(), nullable=False),
        sa.Column("discount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_cents", sa.Integer(), nullable=False),
        sa.Column("refunded_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("status", sa.String(length=24), nullable=False),
        sa.Column("customer_email", sa.String(length=320), nullable=False),
        sa.Column("github_username", sa.String(length=64), nullable=True),
        _ts("paid_at", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["checkout_attempt_id"], ["checkout_attempts.id"]),
        sa.UniqueConstraint("provider_session_id", name="uq_orders_provider_session_id"),
    )
    op.create_index("ix_orders_user_id", "orders", ["user_id"])
    op.create_index(
        "ix_orders_checkout_attempt_id", "orders", ["checkout_attempt_id"], unique=True
    )
    op.create_index(
        "ix_orders_provider_payment_id", "orders", ["provider_payment_id"], unique=True
    )
    op.create_index("ix_orders_status", "orders", ["status"])

    op.create_table(
        "order_items",
        _id(),
        _fk("order_id"),
        _fk("product_id"),
        _fk("version_id"),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.ForeignKeyConstraint(["version_id"], ["product_versions.id"]),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])
    op.create_index("ix_order_items_product_id", "order_items", ["product_id"])
    op.create_index("ix_order_items_version_id", "order_items", ["version_id"])

    op.create_table(
        "entitlements",
        _id(),
        _fk("user_id"),
        _fk("order_id"),
        _fk("version_id"),
        sa.Column("status", sa.String(length=16), nullable=False),
        _ts("created_at"),
        _ts("revoked_at", nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["version_id"], ["product_versions.id"]),
        sa.UniqueConstraint("order_id", "version_id", name="uq_entitlements_order_version"),
    )
    op.create_index("ix_entitlements_user_id", "entitlements", ["user_id"])
    op.create_index("ix_entitlements_order_id", "entitlements", ["order_id"])
    op.create_index("ix_entitlements_version_id", "entitlements", ["version_id"])

    op.create_table(
        "licenses",
        _id(),
        _fk("order_id"),
        _fk("user_id"),
        _fk("version_id"),
        sa.Column("license_key", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        _ts("created_at"),
        _ts("revoked_at", nullable=True),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["version_id"], ["product_versions.id"]),
        sa.UniqueConstraint("order_id", "version_id", name="uq_licenses_order_version"),
    )
    op.create_index("ix_licenses_license_key", "licenses", ["license_key"], unique=True)
    op.create_index("ix_licenses_order_id", "licenses", ["order_id"])
    op.create_index("ix_licenses_user_id", "licenses", ["user_id"])
    op.create_index("ix_licenses_version_id", "licenses", ["version_id"])

    op.create_table(
        "license_activations",
        _id(),
        _fk("license_id"),
        sa.Column("device_id_hash", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        _ts("activated_at"),
        _ts("last_seen_at"),
        _ts("deactivated_at", nullable=True),
        sa.ForeignKeyConstraint(["license_id"], ["licenses.id"], ondelete="CASCADE"),
        sa.UniqueConstraint(
            "license_id", "device_id_hash", name="uq_license_activations_device"
        ),
    )
    op.create_index("ix_license_activations_license_id", "license_activations", ["license_id"])
    op.create_index("ix_license_activations_status", "license_activations", ["status"])

    op.create_table(
        "discount_redemptions",
        _id(),
        _fk("discount_id"),
        _fk("checkout_attempt_id"),
        _fk("order_id", nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        _ts("created_at"),
        _ts("released_at", nullable=True),
        sa.ForeignKeyConstraint(["discount_id"], ["discounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["checkout_attempt_id"], ["checkout_attempts.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.UniqueConstraint(
            "discount_id", "checkout_attempt_id", name="uq_discount_redemptions_attempt"
        ),
        sa.UniqueConstraint("discount_id", "order_id", name="uq_discount_redemptions_order"),
    )
    op.create_index("ix_discount_redemptions_discount_id", "discount_redemptions", ["discount_id"])
    op.create_index(
        "ix_discount_redemptions_checkout_attempt_id",
        "discount_redemptions",
        ["checkout_attempt_id"],
    )
    op.create_index("ix_discount_redemptions_order_id", "discount_redemptions", ["order_id"])

    op.create_table(
        "affiliate_attributions",
        _id(),
        _fk("affiliate_id"),
        _fk("checkout_attempt_id"),
        sa.Column("referral_code", sa.String(length=64), nullable=False),
        _ts("created_at"),
        sa.ForeignKeyConstraint(["affiliate_id"], ["affiliates.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["checkout_attempt_id"], ["checkout_attempts.id"]),
        sa.UniqueConstraint(
            "checkout_attempt_id", name="uq_affiliate_attributions_checkout_attempt_id"
        ),
    )
    op.create_index(
        "ix_affiliate_attributions_affiliate_id", "affiliate_attributions", ["affiliate_id"]
    )

    op.create_table(
        "affiliate_payouts",
        _id(),
        _fk("affiliate_id"),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("commission_count", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        _ts("created_at"),
        _ts("sent_at", nullable=True),
        sa.ForeignKeyConstraint(["affiliate_id"], ["affiliates.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_affiliate_payouts_affiliate_id", "affiliate_payouts", ["affiliate_id"])

    op.create_table(
        "affiliate_commissions",
        _id(),
        _fk("affiliate_id"),
        _fk("order_id"),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        _ts("available_at"),
        _fk("payout_id", nullable=True),
        _ts("created_at"),
        _ts("reversed_at", nullable=True),
        sa.ForeignKeyConstraint(["affiliate_id"], ["affiliates.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["payout_id"], ["affiliate_payouts.id"]),
        sa.UniqueConstraint("affiliate_id", "order_id", name="uq_affiliate_commissions_order"),
    )
    op.create_index(
        "ix_affiliate_commissions_affiliate_id", "affiliate_commissions", ["affiliate_id"]
    )
    op.create_index("ix_affiliate_commissions_order_id", "affiliate_commissions", ["order_id"])
    op.create_index("ix_affiliate_commissions_status", "affiliate_commissions", ["status"])
    op.create_index("ix_affiliate_commissions_payout_id", "affiliate_commissions", ["payout_id"])

    op.create_table(
        "inbound_events",
        _id(),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=128), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _ts("received_at"),
        _ts("processed_at", nullable=True),
    )
    op.create_index("ix_inbound_events_event_id", "inbound_events", ["event_id"], unique=True)
    op.create_index("ix_inbound_events_status", "inbound_events", ["status"])

    op.create_table(
        "jobs",
        _id(),
        sa.Column("job_type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        _ts("run_at"),
        sa.Column("locked_by", sa.String(length=128), nullable=True),
        _ts("locked_at", nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        _ts("finished_at", nullable=True),
        sa.UniqueConstraint("job_type", "idempotency_key", name="uq_jobs_type_idempotency_key"),
    )
    op.create_index("ix_jobs_job_type", "jobs", ["job_type"])
    op.create_index("ix_jobs_status_run_at", "jobs", ["status", "run_at"])

    op.create_table(
        "webhook_subscriptions",
        _id(),
        sa.Column("url", sa.String(length=2048), nullable=False),
        sa.Column("secret", sa.String(length=255), nullable=False),
        sa.Column("event_types", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        _ts("created_at"),
    )

    op.create_table(
        "webhook_deliveries",
        _id(),
        _fk("subscription_id"),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _ts("next_attempt_at", nullable=True),
        sa.Column("last_status_code", sa.Integer(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        _ts("created_at"),
        _ts("delivered_at", nullable=True),
        sa.ForeignKeyConstraint(
            ["subscription_id"], ["webhook_subscriptions.id"], ondelete="CASCADE"
        ),
        sa.UniqueConstraint("subscription_id", "event_id", name="uq_webhook_deliveries_event"),
    )
    op.create_index(
        "ix_webhook_deliveries_subscription_id", "webhook_deliveries", ["subscription_id"]
    )
    op.create_index("ix_webhook_deliveries_status", "webhook_deliveries", ["status"])
    op.create_index(
        "ix_webhook_deliveries_next_attempt_at", "webhook_deliveries", ["next_attempt_at"]
    )


def downgrade() -> None:
    # children first; dropping a table drops its indexes
    for table in (
        "webhook_deliveries",
        "webhook_subscriptions",
        "jobs",
        "inbound_events",
        "affiliate_commissions",
        "affiliate_payouts",
        "affiliate_attributions",
        "discount_redemptions",
        "license_activations",
        "licenses",
        "entitlements",
        "order_items",
        "orders",
        "checkout_attempts",
        "affiliates",
        "discounts",
        "product_versions",
        "products",
        "users",
    ):
        op.drop_table(table)
