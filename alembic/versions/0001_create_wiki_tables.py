"""create wiki tables

Revision ID: 0001_create_wiki_tables
Revises: 
Create Date: 2026-10-18 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_create_wiki_tables"
down_revision = None
branch_labels = None
depends_on = None


def _id():
    return postgresql.UUID(as_uuid=False).with_variant(sa.String(length=36), "sqlite")


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", _id(), primary_key=True),
        sa.Column("external_id", sa.String(length=255), nullable=True),
        sa.Column("username", sa.String(length=100), nullable=False, unique=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("display_name", sa.String(length=200), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=True),
        sa.Column("last_name", sa.String(length=100), nullable=True),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_editor", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("provider", sa.String(length=50), nullable=False, server_default="Local"),
        sa.Column("password_hash", sa.String(length=255), nullable=True),
        sa.Column("is_locked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("locked_until", sa.DateTime(), nullable=True),
        sa.Column("failed_login_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("password_reset_token", sa.String(length=255), nullable=True),
        sa.Column("password_reset_expiry", sa.DateTime(), nullable=True),
        sa.Column("last_password_change_on", sa.DateTime(), nullable=True),
        sa.Column("last_login", sa.DateTime(), nullable=True),
        sa.Column("created_on", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_users_external_id", "users", ["external_id"])

    op.create_table(
        "user_roles",
        sa.Column("id", _id(), primary_key=True),
        sa.Column("user_id", _id(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.Integer(), nullable=False),
        sa.Column("assigned_on", sa.DateTime(), nullable=False),
        sa.Column("assigned_by", sa.String(length=100), nullable=False, server_default="system"),
        sa.UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("slug", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "parent_category_id", sa.Integer(), sa.ForeignKey("categories.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by", sa.String(length=100), nullable=False, server_default="system"),
        sa.Column("created_on", sa.DateTime(), nullable=False),
        sa.Column("modified_by", sa.String(length=100), nullable=True),
        sa.Column("modified_on", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_categories_slug", "categories", ["slug"])

    op.create_table(
        "pages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("slug", sa.String(length=500), nullable=False, unique=True),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id", ondelete="SET NULL"), nullable=True),
        sa.Column("created_by", sa.String(length=100), nullable=False),
        sa.Column("created_on", sa.DateTime(), nullable=False),
        sa.Column("modified_by", sa.String(length=100), nullable=False),
        sa.Column("modified_on", sa.DateTime(), nullable=False),
        sa.Column("is_locked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("visibility", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_pages_title", "pages", ["title"])

    op.create_table(
        "page_contents",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("page_id", sa.Integer(), sa.ForeignKey("pages.id", ondelete="CASCADE"), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("version_number", sa.Integer(), nullable=False),
        sa.Column("edited_by", sa.String(length=100), nullable=False),
        sa.Column("edited_on", sa.DateTime(), nullable=False),
        sa.Column("change_comment", sa.String(length=500), nullable=True),
        sa.UniqueConstraint("page_id", "version_number", name="uq_page_contents_version"),
    )

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
    )

    op.create_table(
        "page_tags",
        sa.Column("page_id", sa.Integer(), sa.ForeignKey("pages.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
    )

    op.create_table(
        "menus",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        sa.Column("menu_type", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("markup", sa.Text(), nullable=False),
        sa.Column("footer_left_zone", sa.Text(), nullable=True),
        sa.Column("footer_right_zone", sa.Text(), nullable=True),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("modified_by", sa.String(length=100), nullable=False, server_default="system"),
        sa.Column("modified_on", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "folders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "parent_folder_id", sa.Integer(), sa.ForeignKey("folders.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by", sa.String(length=100), nullable=False),
        sa.Column("created_on", sa.DateTime(), nullable=False),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_folders_slug", "folders", ["slug"])

    op.create_table(
        "file_contents",
        sa.Column("file_hash", sa.String(length=64), primary_key=True),
        sa.Column("storage_path", sa.String(length=1000), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False),
        sa.Column("storage_provider", sa.String(length=50), nullable=False, server_default="Local"),
        sa.Column("reference_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_on", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "files",
        sa.Column("id", _id(), primary_key=True),
        sa.Column("file_hash", sa.String(length=64), nullable=False),
        sa.Column("file_name", sa.String(length=255), nullable=False),
        sa.Column("file_path", sa.String(length=1000), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False),
        sa.Column("content_type", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("folder_id", sa.Integer(), sa.ForeignKey("folders.id", ondelete="SET NULL"), nullable=True),
        sa.Column("storage_provider", sa.String(length=50), nullable=False, server_default="Local"),
        sa.Column("uploaded_by", sa.String(length=100), nullable=False),
        sa.Column("uploaded_on", sa.DateTime(), nullable=False),
        sa.Column("visibility", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("current_version", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index("ix_files_file_hash", "files", ["file_hash"])

    op.create_table(
        "file_versions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("file_id", _id(), sa.ForeignKey("files.id", ondelete="CASCADE"), nullable=False),
        sa.Column("version_number", sa.Integer(), nullable=False),
        sa.Column("file_hash", sa.String(length=64), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False),
        sa.Column("created_by", sa.String(length=100), nullable=False),
        sa.Column("created_on", sa.DateTime(), nullable=False),
        sa.Column("change_description", sa.String(length=500), nullable=True),
    )

    op.create_table(
        "site_configurations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("key", sa.String(length=200), nullable=False, unique=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("modified_on", sa.DateTime(), nullable=False),
        sa.Column("modified_by", sa.String(length=100), nullable=False, server_default="system"),
    )

    op.create_table(
        "plugins",
        sa.Column("id", _id(), primary_key=True),
        sa.Column("plugin_id", sa.String(length=255), nullable=False, unique=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("version", sa.String(length=50), nullable=False),
        sa.Column("plugin_type", sa.String(length=50), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_configured", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("load_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_core_plugin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "plugin_settings",
        sa.Column("id", _id(), primary_key=True),
        sa.Column("plugin_fk", _id(), sa.ForeignKey("plugins.id", ondelete="CASCADE"), nullable=False),
        sa.Column("key", sa.String(length=200), nullable=False),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("is_from_environment", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("environment_variable_name", sa.String(length=300), nullable=True),
        sa.Column("is_secret", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("plugin_fk", "key", name="uq_plugin_settings_key"),
    )

    op.create_table(
        "plugin_audit_logs",
        sa.Column("id", _id(), primary_key=True),
        sa.Column("plugin_fk", _id(), sa.ForeignKey("plugins.id", ondelete="SET NULL"), nullable=True),
        sa.Column("plugin_identifier", sa.String(length=255), nullable=False),
        sa.Column("plugin_name", sa.String(length=255), nullable=False),
        sa.Column("operation", sa.String(length=50), nullable=False),
        sa.Column("username", sa.String(length=100), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=True),
        sa.Column("changes", sa.Text(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=500), nullable=True),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_plugin_audit_logs_timestamp", "plugin_audit_logs", ["timestamp"])


def downgrade():
    for table in (
        "plugin_audit_logs",
        "plugin_settings",
        "plugins",
        "site_configurations",
        "file_versions",
        "files",
        "file_contents",
        "folders",
        "menus",
        "page_tags",
        "tags",
        "page_contents",
        "pages",
        "categories",
        "user_roles",
        "users",
    ):
        op.drop_table(table)
