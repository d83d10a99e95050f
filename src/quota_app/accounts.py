"""
Typed views of an Account row.

The `accounts` table holds every account type in one shape; the refresh path
works on one variant per type so each carries only the fields it uses, with
credentials already decrypted.
"""

from dataclasses import dataclass

from quota_app.db_models import Account
from quota_app.vault import CredentialVault

ACCOUNT_TYPE_COPILOT = "copilot"
ACCOUNT_TYPE_CLAUDE_CODE = "claude_code"
ACCOUNT_TYPE_CLAUDE_WEB = "claude_web"


@dataclass(slots=True)
class CopilotAccount:
    id: int
    username: str
    token: str
    plan: str
    billing_org: str | None
    orgs: list[str] | None


@dataclass(slots=True)
class ClaudeCodeAccount:
    id: int
    username: str
    admin_key: str
    plan: str | None
    monthly_budget: float | None
    user_email: str | None


@dataclass(slots=True)
class ClaudeWebAccount:
    id: int
    username: str
    access_token: str
    refresh_token: str | None
    token_expires_at: float | None


AccountVariant = CopilotAccount | ClaudeCodeAccount | ClaudeWebAccount


def split_orgs(value: str | None) -> list[str] | None:
    if value is None:
        return None
    return [org.strip() for org in value.split(",") if org.strip()]


def join_orgs(orgs: list[str]) -> str:
    return ",".join(orgs)


def to_variant(row: Account, vault: CredentialVault) -> AccountVariant:
    """Decrypt the row's credentials into its type-specific variant."""
    account_type = (row.account_type or ACCOUNT_TYPE_COPILOT).lower()

    if account_type == ACCOUNT_TYPE_CLAUDE_CODE:
        return ClaudeCodeAccount(
            id=row.id,
            username=row.username,
            admin_key=vault.decrypt(row.pat_token),
            plan=row.claude_plan,
            monthly_budget=row.monthly_budget,
            user_email=row.claude_user_email,
        )

    if account_type == ACCOUNT_TYPE_CLAUDE_WEB:
        return ClaudeWebAccount(
            id=row.id,
            username=row.username,
            access_token=vault.decrypt(row.pat_token),
            refresh_token=vault.decrypt(row.refresh_token) or None,
            token_expires_at=row.token_expires_at,
        )

    if account_type == ACCOUNT_TYPE_COPILOT:
        # Device-flow accounts store their token in oauth_token
        token = vault.decrypt(row.oauth_token) or vault.decrypt(row.pat_token)
        return CopilotAccount(
            id=row.id,
            username=row.username,
            token=token,
            plan=row.copilot_plan or "pro",
            billing_org=row.billing_org or None,
            orgs=split_orgs(row.github_orgs),
        )

    raise ValueError(f"Unknown account type: {row.account_type}")
