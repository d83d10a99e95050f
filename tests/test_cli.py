import pytest
from rich.console import Console

from quota_app.cli import build_status_table, main
from quota_app.usage_store import upsert_usage
from quota_app.vault import reset_vault
from quota_library.usage_types import BillingPeriod


@pytest.fixture(autouse=True)
def _fresh_vault():
    reset_vault()
    yield
    reset_vault()


def _render(table) -> str:
    console = Console(record=True, width=200)
    console.print(table)
    return console.export_text()


@pytest.mark.asyncio
async def test_status_table_lists_accounts_with_latest_usage(session_maker, add_account) -> None:
    copilot = await add_account("octocat", copilot_plan="pro")
    await add_account(
        "claude-user",
        account_type="claude_web",
        claude_plan="max",
        is_paused=True,
        last_error="Token expired",
    )
    async with session_maker() as session:
        await upsert_usage(
            session,
            copilot.id,
            BillingPeriod(2026, 3),
            {"gross_quantity": 270, "percentage": 90.0, "source": "user:premium_request"},
        )
        await session.commit()

    text = _render(await build_status_table(session_maker))

    assert "octocat" in text
    assert "90.0%" in text
    assert "user:premium_request" in text
    assert "claude-user (paused)" in text
    assert "Token expired" in text


def test_status_command_on_empty_database(tmp_path, capsys) -> None:
    assert main(["--root", str(tmp_path), "status"]) == 0
    assert "Kuota accounts" in capsys.readouterr().out


def test_refresh_unknown_account_fails(tmp_path, capsys) -> None:
    assert main(["--root", str(tmp_path), "refresh", "--id", "99"]) == 1
    assert "Account 99 not found" in capsys.readouterr().out


def test_refresh_all_with_no_accounts_succeeds(tmp_path, capsys) -> None:
    assert main(["--root", str(tmp_path), "refresh"]) == 0
    assert "0 failed" in capsys.readouterr().out
