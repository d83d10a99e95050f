from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    display_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    account_type: Mapped[str] = mapped_column(String(32), default="copilot", index=True)
    # Encrypted at rest (CredentialVault envelopes)
    pat_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    oauth_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[float | None] = mapped_column(Float, nullable=True)
    copilot_plan: Mapped[str] = mapped_column(String(32), default="pro")
    claude_plan: Mapped[str | None] = mapped_column(String(32), nullable=True)
    monthly_budget: Mapped[float | None] = mapped_column(Float, nullable=True)
    claude_user_email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    billing_org: Mapped[str | None] = mapped_column(String(128), nullable=True)
    github_orgs: Mapped[str | None] = mapped_column(Text, nullable=True)
    login_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_paused: Mapped[bool] = mapped_column(Boolean, default=False)
    is_favorite: Mapped[bool] = mapped_column(Boolean, default=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_refreshed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    usage: Mapped[list["UsageHistory"]] = relationship(
        back_populates="account", cascade="all, delete-orphan"
    )


class UsageHistory(Base):
    __tablename__ = "usage_history"
    __table_args__ = (
        UniqueConstraint("account_id", "year", "month", name="uq_account_period"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), index=True
    )
    year: Mapped[int] = mapped_column(Integer)
    month: Mapped[int] = mapped_column(Integer)
    gross_quantity: Mapped[float] = mapped_column(Float, default=0)
    included_quantity: Mapped[float] = mapped_column(Float, default=0)
    net_amount: Mapped[float] = mapped_column(Float, default=0)
    plan_limit: Mapped[float] = mapped_column(Float, default=0)
    percentage: Mapped[float] = mapped_column(Float, default=0)
    sessions: Mapped[int] = mapped_column(Integer, default=0)
    lines_added: Mapped[int] = mapped_column(Integer, default=0)
    lines_removed: Mapped[int] = mapped_column(Integer, default=0)
    commits: Mapped[int] = mapped_column(Integer, default=0)
    pull_requests: Mapped[int] = mapped_column(Integer, default=0)
    session_usage_pct: Mapped[float] = mapped_column(Float, default=0)
    session_reset_at: Mapped[str | None] = mapped_column(String(64), nullable=True)
    weekly_usage_pct: Mapped[float] = mapped_column(Float, default=0)
    weekly_reset_at: Mapped[str | None] = mapped_column(String(64), nullable=True)
    weekly_opus_usage_pct: Mapped[float] = mapped_column(Float, default=0)
    weekly_opus_reset_at: Mapped[str | None] = mapped_column(String(64), nullable=True)
    extra_usage_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    extra_usage_spent: Mapped[float] = mapped_column(Float, default=0)
    extra_usage_limit: Mapped[float] = mapped_column(Float, default=0)
    extra_usage_balance: Mapped[float] = mapped_column(Float, default=0)
    source: Mapped[str | None] = mapped_column(String(128), nullable=True)
    fetched_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    account: Mapped[Account] = relationship(back_populates="usage")
    details: Mapped[list["UsageDetail"]] = relationship(
        back_populates="history", cascade="all, delete-orphan"
    )


class UsageDetail(Base):
    __tablename__ = "usage_detail"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    usage_history_id: Mapped[int] = mapped_column(
        ForeignKey("usage_history.id", ondelete="CASCADE"), index=True
    )
    model: Mapped[str] = mapped_column(String(256))
    quantity: Mapped[float] = mapped_column(Float, default=0)
    price_per_unit: Mapped[float] = mapped_column(Float, default=0)
    net_amount: Mapped[float] = mapped_column(Float, default=0)
    input_tokens: Mapped[int] = mapped_column(Integer, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, default=0)
    cache_read_tokens: Mapped[int] = mapped_column(Integer, default=0)
    cache_creation_tokens: Mapped[int] = mapped_column(Integer, default=0)

    history: Mapped[UsageHistory] = relationship(back_populates="details")


class AppSetting(Base):
    __tablename__ = "app_settings"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
