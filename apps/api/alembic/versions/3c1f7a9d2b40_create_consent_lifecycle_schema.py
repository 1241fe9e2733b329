"""create consent lifecycle schema

Revision ID: 3c1f7a9d2b40
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "3c1f7a9d2b40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UUID = postgresql.UUID(as_uuid=True)


def _has_table(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _has_index(inspector: sa.Inspector, table_name: str, index_name: str) -> bool:
    return any(idx["name"] == index_name for idx in inspector.get_indexes(table_name))


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def _tables() -> list[tuple[str, list]]:
    return [
        (
            "data_fiduciaries",
            [
                sa.Column("id", UUID, primary_key=True),
                sa.Column("name", sa.String(length=255), nullable=False, unique=True),
                sa.Column("contact_email", sa.String(length=255), nullable=True),
                sa.Column("webhook_url", sa.String(length=2048), nullable=True),
                sa.Column("rate_limit_per_min", sa.Integer(), nullable=True),
                sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
                sa.Column("lifecycle_state", sa.String(length=9), nullable=False, server_default="active"),
                _created_at(),
            ],
        ),
        (
            "api_keys",
            [
                sa.Column("id", UUID, primary_key=True),
                sa.Column("data_fiduciary_id", UUID, sa.ForeignKey("data_fiduciaries.id", ondelete="CASCADE"), nullable=False),
                sa.Column("key_hash", sa.String(length=128), nullable=False, unique=True),
                sa.Column("label", sa.String(length=128), nullable=False),
                _created_at(),
                sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
                sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
            ],
        ),
        (
            "purpose_categories",
            [
                sa.Column("id", UUID, primary_key=True),
                sa.Column("data_fiduciary_id", UUID, sa.ForeignKey("data_fiduciaries.id", ondelete="CASCADE"), nullable=False),
                sa.Column("name", sa.String(length=255), nullable=False),
                sa.Column("description", sa.Text(), nullable=True),
                sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
                sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
                _created_at(),
                sa.UniqueConstraint("data_fiduciary_id", "name", name="uq_purpose_categories_fiduciary_name"),
            ],
        ),
        (
            "purposes",
            [
                sa.Column("id", UUID, primary_key=True),
                sa.Column("data_fiduciary_id", UUID, sa.ForeignKey("data_fiduciaries.id", ondelete="RESTRICT"), nullable=False),
                sa.Column("purpose_category_id", UUID, sa.ForeignKey("purpose_categories.id", ondelete="SET NULL"), nullable=True),
                sa.Column("title", sa.String(length=255), nullable=False),
                sa.Column("description", sa.Text(), nullable=True),
                sa.Column("legal_basis", sa.String(length=64), nullable=True),
                sa.Column("data_fields", sa.JSON(), nullable=False),
                sa.Column("processing_activities", sa.JSON(), nullable=False),
                sa.Column("retention_period_days", sa.Integer(), nullable=True),
                sa.Column("is_mandatory", sa.Boolean(), nullable=False, server_default=sa.text("false")),
                sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
                sa.Column("requires_renewal", sa.Boolean(), nullable=False, server_default=sa.text("false")),
                sa.Column("renewal_period_days", sa.Integer(), nullable=True),
                sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
                _created_at(),
                sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            ],
        ),
        (
            "purpose_versions",
            [
                sa.Column("id", UUID, primary_key=True),
                sa.Column("purpose_id", UUID, sa.ForeignKey("purposes.id", ondelete="RESTRICT"), nullable=False),
                sa.Column("version_number", sa.Integer(), nullable=False),
                sa.Column("title", sa.String(length=255), nullable=False),
                sa.Column("description", sa.Text(), nullable=True),
                sa.Column("legal_basis", sa.String(length=64), nullable=True),
                sa.Column("data_fields", sa.JSON(), nullable=False),
                sa.Column("retention_period_days", sa.Integer(), nullable=True),
                sa.Column("language_code", sa.String(length=8), nullable=False, server_default="en"),
                sa.Column("is_current", sa.Boolean(), nullable=False, server_default=sa.text("true")),
                sa.Column("published_at", sa.DateTime(timezone=True), nullable=False),
                sa.Column("deprecated_at", sa.DateTime(timezone=True), nullable=True),
                sa.UniqueConstraint("purpose_id", "version_number", name="uq_purpose_versions_purpose_version"),
            ],
        ),
        (
            "data_principals",
            [
                sa.Column("id", UUID, primary_key=True),
                sa.Column("external_id", sa.String(length=255), nullable=False),
                sa.Column("email", sa.String(length=255), nullable=True),
                sa.Column("phone", sa.String(length=32), nullable=True),
                sa.Column("language", sa.String(length=8), nullable=False, server_default="en"),
                _created_at(),
                sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            ],
        ),
        (
            "principal_fiduciary_map",
            [
                sa.Column("id", UUID, primary_key=True),
                sa.Column("data_fiduciary_id", UUID, sa.ForeignKey("data_fiduciaries.id", ondelete="CASCADE"), nullable=False),
                sa.Column("data_principal_id", UUID, sa.ForeignKey("data_principals.id", ondelete="CASCADE"), nullable=False),
                sa.Column("external_ref", sa.String(length=255), nullable=False),
                _created_at(),
                sa.UniqueConstraint("data_fiduciary_id", "external_ref", name="uq_principal_map_fiduciary_external_ref"),
            ],
        ),
        (
            "consent_requests",
            [
                sa.Column("id", UUID, primary_key=True),
                sa.Column("data_fiduciary_id", UUID, sa.ForeignKey("data_fiduciaries.id", ondelete="RESTRICT"), nullable=False),
                sa.Column("external_user_id", sa.String(length=255), nullable=False),
                sa.Column("data_principal_id", UUID, sa.ForeignKey("data_principals.id", ondelete="SET NULL"), nullable=True),
                sa.Column("purpose_ids", sa.JSON(), nullable=False),
                sa.Column("status", sa.String(length=32), nullable=False),
                sa.Column("language", sa.String(length=8), nullable=False),
                sa.Column("redirect_url", sa.String(length=2048), nullable=True),
                sa.Column("duration_days", sa.Integer(), nullable=True),
                sa.Column("email", sa.String(length=255), nullable=True),
                sa.Column("phone", sa.String(length=32), nullable=True),
                sa.Column("metadata", sa.JSON(), nullable=False),
                sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
                sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
                sa.Column("viewed_at", sa.DateTime(timezone=True), nullable=True),
                sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
                sa.Column("artifact_id", UUID, nullable=True),
            ],
        ),
        (
            "consent_artifacts",
            [
                sa.Column("id", UUID, primary_key=True),
                sa.Column("data_fiduciary_id", UUID, sa.ForeignKey("data_fiduciaries.id", ondelete="RESTRICT"), nullable=False),
                sa.Column("data_principal_id", UUID, sa.ForeignKey("data_principals.id", ondelete="RESTRICT"), nullable=False),
                sa.Column("external_user_id", sa.String(length=255), nullable=False),
                sa.Column("consent_request_id", UUID, sa.ForeignKey("consent_requests.id", ondelete="SET NULL"), nullable=True),
                sa.Column("status", sa.String(length=32), nullable=False),
                sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
                sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False),
                sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
                sa.Column("withdrawn_at", sa.DateTime(timezone=True), nullable=True),
                sa.Column("last_validated_at", sa.DateTime(timezone=True), nullable=True),
                sa.Column("last_reminder_at", sa.DateTime(timezone=True), nullable=True),
                sa.Column("consent_text_hash", sa.String(length=64), nullable=False),
                sa.Column("metadata", sa.JSON(), nullable=False),
                sa.Column("supersedes_id", UUID, nullable=True),
                sa.Column("superseded_by_id", UUID, nullable=True),
                sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
                sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            ],
        ),
        (
            "consent_artifact_purposes",
            [
                sa.Column("id", UUID, primary_key=True),
                sa.Column("artifact_id", UUID, sa.ForeignKey("consent_artifacts.id", ondelete="RESTRICT"), nullable=False),
                sa.Column("purpose_id", UUID, sa.ForeignKey("purposes.id", ondelete="RESTRICT"), nullable=False),
                sa.Column("purpose_version_id", UUID, sa.ForeignKey("purpose_versions.id", ondelete="RESTRICT"), nullable=False),
                sa.UniqueConstraint("artifact_id", "purpose_id", name="uq_artifact_purposes_artifact_purpose"),
            ],
        ),
        (
            "consent_history",
            [
                sa.Column("id", UUID, primary_key=True),
                sa.Column("artifact_id", UUID, sa.ForeignKey("consent_artifacts.id", ondelete="RESTRICT"), nullable=False),
                sa.Column("action", sa.String(length=16), nullable=False),
                sa.Column("previous_status", sa.String(length=32), nullable=True),
                sa.Column("new_status", sa.String(length=32), nullable=True),
                sa.Column("performed_by", sa.String(length=255), nullable=True),
                sa.Column("performed_by_type", sa.String(length=16), nullable=False),
                sa.Column("performed_at", sa.DateTime(timezone=True), nullable=False),
                sa.Column("notes", sa.Text(), nullable=True),
            ],
        ),
        (
            "consent_renewals",
            [
                sa.Column("id", UUID, primary_key=True),
                sa.Column("artifact_id", UUID, sa.ForeignKey("consent_artifacts.id", ondelete="RESTRICT"), nullable=False),
                sa.Column("data_fiduciary_id", UUID, sa.ForeignKey("data_fiduciaries.id", ondelete="RESTRICT"), nullable=False),
                sa.Column("status", sa.String(length=32), nullable=False),
                sa.Column("initiated_by", sa.String(length=32), nullable=False),
                sa.Column("extend_by_days", sa.Integer(), nullable=False),
                sa.Column("purpose_ids", sa.JSON(), nullable=False),
                sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
                sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
                sa.Column("result_artifact_id", UUID, nullable=True),
                sa.Column("outcome", sa.String(length=32), nullable=True),
                sa.Column("notes", sa.Text(), nullable=True),
            ],
        ),
        (
            "outbound_notifications",
            [
                sa.Column("id", UUID, primary_key=True),
                sa.Column("data_fiduciary_id", UUID, sa.ForeignKey("data_fiduciaries.id", ondelete="CASCADE"), nullable=False),
                sa.Column("kind", sa.String(length=32), nullable=False),
                sa.Column("event_type", sa.String(length=128), nullable=False),
                sa.Column("artifact_id", UUID, nullable=True),
                sa.Column("data_principal_id", UUID, nullable=True),
                sa.Column("channels", sa.JSON(), nullable=False),
                sa.Column("payload_json", sa.JSON(), nullable=False),
                sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
                sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
                sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
                sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
                sa.Column("last_error", sa.Text(), nullable=True),
                _created_at(),
            ],
        ),
        (
            "webhook_logs",
            [
                sa.Column("id", UUID, primary_key=True),
                sa.Column("data_fiduciary_id", UUID, sa.ForeignKey("data_fiduciaries.id", ondelete="CASCADE"), nullable=False),
                sa.Column("notification_id", UUID, sa.ForeignKey("outbound_notifications.id", ondelete="SET NULL"), nullable=True),
                sa.Column("event_type", sa.String(length=128), nullable=False),
                sa.Column("url", sa.String(length=2048), nullable=False),
                sa.Column("method", sa.String(length=8), nullable=False),
                sa.Column("status_code", sa.Integer(), nullable=True),
                sa.Column("response_time_ms", sa.Integer(), nullable=True),
                sa.Column("success", sa.Boolean(), nullable=False),
                sa.Column("error_message", sa.Text(), nullable=True),
                sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            ],
        ),
    ]


INDEXES = [
    ("ix_api_keys_data_fiduciary_id", "api_keys", ["data_fiduciary_id"]),
    ("ix_purpose_categories_data_fiduciary_id", "purpose_categories", ["data_fiduciary_id"]),
    ("ix_purposes_data_fiduciary_id", "purposes", ["data_fiduciary_id"]),
    ("ix_purposes_fiduciary_active", "purposes", ["data_fiduciary_id", "is_active"]),
    ("ix_purpose_versions_purpose_id", "purpose_versions", ["purpose_id"]),
    ("ix_purpose_versions_purpose_current", "purpose_versions", ["purpose_id", "is_current"]),
    ("ix_data_principals_external_id", "data_principals", ["external_id"]),
    ("ix_principal_fiduciary_map_data_fiduciary_id", "principal_fiduciary_map", ["data_fiduciary_id"]),
    ("ix_principal_fiduciary_map_data_principal_id", "principal_fiduciary_map", ["data_principal_id"]),
    ("ix_consent_requests_data_fiduciary_id", "consent_requests", ["data_fiduciary_id"]),
    ("ix_consent_requests_status_expires", "consent_requests", ["status", "expires_at"]),
    ("ix_consent_artifacts_data_fiduciary_id", "consent_artifacts", ["data_fiduciary_id"]),
    ("ix_consent_artifacts_data_principal_id", "consent_artifacts", ["data_principal_id"]),
    ("ix_consent_artifacts_status_expires", "consent_artifacts", ["status", "expires_at"]),
    ("ix_consent_artifacts_fiduciary_principal", "consent_artifacts", ["data_fiduciary_id", "data_principal_id"]),
    ("ix_consent_artifact_purposes_artifact_id", "consent_artifact_purposes", ["artifact_id"]),
    ("ix_consent_artifact_purposes_purpose_id", "consent_artifact_purposes", ["purpose_id"]),
    ("ix_consent_artifact_purposes_purpose_version_id", "consent_artifact_purposes", ["purpose_version_id"]),
    ("ix_consent_history_artifact_performed_at", "consent_history", ["artifact_id", "performed_at"]),
    ("ix_consent_renewals_data_fiduciary_id", "consent_renewals", ["data_fiduciary_id"]),
    ("ix_consent_renewals_artifact_status", "consent_renewals", ["artifact_id", "status"]),
    ("ix_outbound_notifications_data_fiduciary_id", "outbound_notifications", ["data_fiduciary_id"]),
    ("ix_outbound_notifications_artifact_id", "outbound_notifications", ["artifact_id"]),
    ("ix_outbound_notifications_status_next_attempt", "outbound_notifications", ["status", "next_attempt_at"]),
    ("ix_webhook_logs_fiduciary_created", "webhook_logs", ["data_fiduciary_id", "created_at"]),
]

# At most one open renewal per artifact.
PENDING_RENEWAL_INDEX = "uq_consent_renewals_one_pending"
PENDING_RENEWAL_WHERE = sa.text("status = 'RENEWAL_PENDING'")


def upgrade() -> None:
    bind = op.get_bind()
    for table_name, columns in _tables():
        inspector = sa.inspect(bind)
        if not _has_table(inspector, table_name):
            op.create_table(table_name, *columns)

    for index_name, table_name, columns in INDEXES:
        inspector = sa.inspect(bind)
        if _has_table(inspector, table_name) and not _has_index(inspector, table_name, index_name):
            op.create_index(index_name, table_name, columns, unique=False)

    inspector = sa.inspect(bind)
    if not _has_index(inspector, "consent_renewals", PENDING_RENEWAL_INDEX):
        op.create_index(
            PENDING_RENEWAL_INDEX,
            "consent_renewals",
            ["artifact_id"],
            unique=True,
            postgresql_where=PENDING_RENEWAL_WHERE,
            sqlite_where=PENDING_RENEWAL_WHERE,
        )

    if bind.dialect.name == "postgresql":
        # History and bindings are append-only at the database level too.
        op.execute(
            sa.text(
                """
                CREATE OR REPLACE FUNCTION reject_append_only_change() RETURNS trigger AS $$
                BEGIN
                    RAISE EXCEPTION '% is append-only', TG_TABLE_NAME;
                END;
                $$ LANGUAGE plpgsql;
                """
            )
        )
        for table_name in ("consent_history", "consent_artifact_purposes"):
            op.execute(sa.text(f"DROP TRIGGER IF EXISTS {table_name}_append_only ON {table_name}"))
            op.execute(
                sa.text(
                    f"CREATE TRIGGER {table_name}_append_only BEFORE UPDATE OR DELETE ON {table_name} "
                    "FOR EACH ROW EXECUTE FUNCTION reject_append_only_change()"
                )
            )


def downgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for table_name in ("consent_history", "consent_artifact_purposes"):
            op.execute(sa.text(f"DROP TRIGGER IF EXISTS {table_name}_append_only ON {table_name}"))
        op.execute(sa.text("DROP FUNCTION IF EXISTS reject_append_only_change()"))

    for table_name, _ in reversed(_tables()):
        inspector = sa.inspect(bind)
        if _has_table(inspector, table_name):
            op.drop_table(table_name)
