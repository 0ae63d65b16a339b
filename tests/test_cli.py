from __future__ import annotations

from io import BytesIO
from pathlib import Path
from typing import Callable, List

import pytest

from conftest import InMemoryFirestore, upi_row
from installment_ledger import cli


@pytest.fixture
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, store: InMemoryFirestore) -> List[str]:
    monkeypatch.setenv("FIRESTORE_PROJECT_ID", "rikshaw-925ef")
    monkeypatch.setenv("LEDGER_USER_ID", "u1")
    monkeypatch.setenv("FIRESTORE_TOKEN", "tok")
    monkeypatch.setenv("LOG_FILE", str(tmp_path / "ledger.log"))
    monkeypatch.setattr(cli, "_build_client", lambda _cfg: store)
    return ["--env-file", str(tmp_path / "none.env"), "--config", str(tmp_path / "none.yaml")]


def test_missing_token_exits(cli_env: List[str], monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FIRESTORE_TOKEN", "")
    with pytest.raises(SystemExit):
        cli.main(cli_env + ["list-customers"])


def test_customer_payment_and_pending_flow(cli_env: List[str], store: InMemoryFirestore, capsys: pytest.CaptureFixture[str]) -> None:
    assert (
        cli.main(
            cli_env
            + [
                "add-customer",
                "--account", "A1",
                "--name", "Ravi",
                "--installment", "100",
                "--total", "10,000",
                "--opening-date", "2024-01-01",
                "--upi", "ravi@ybl",
            ]
        )
        == 0
    )
    assert store.docs["users/u1"]["userId"] == "u1"
    assert cli.main(cli_env + ["add-payment", "A1", "250"]) == 0
    assert cli.main(cli_env + ["pending", "--today", "2024-01-05"]) == 0

    out = capsys.readouterr().out
    assert "Added customer A1 (Ravi)" in out
    assert "Recorded ₹250.00 for A1" in out
    assert "A1\tRavi\t2 days overdue (since 2024-01-03)" in out

    # Duplicate customer is reported, not raised.
    assert cli.main(cli_env + ["add-customer", "--account", "A1", "--name", "X", "--installment", "1", "--total", "1"]) == 1
    assert "already exists" in capsys.readouterr().out


def test_import_statement_command(
    cli_env: List[str],
    tmp_path: Path,
    statement_xlsx: Callable[..., BytesIO],
    capsys: pytest.CaptureFixture[str],
) -> None:
    cli.main(cli_env + ["add-customer", "--account", "A1", "--name", "Ravi", "--installment", "100", "--total", "1000", "--upi", "ravi@ybl"])
    path = tmp_path / "statement.xlsx"
    path.write_bytes(statement_xlsx([upi_row("RRN001", "ravi@ybl", "300"), upi_row("RRN002", "who@ybl", "5")]).getvalue())

    assert cli.main(cli_env + ["import-statement", str(path)]) == 0
    out = capsys.readouterr().out
    assert "Transactions added: 1" in out
    assert "who@ybl" in out

    bad = tmp_path / "bad.xlsx"
    bad.write_bytes(b"nope")
    assert cli.main(cli_env + ["import-statement", str(bad)]) == 1
    assert "FATAL: " in capsys.readouterr().out


def test_list_customers_search(cli_env: List[str], capsys: pytest.CaptureFixture[str]) -> None:
    for acc, name in (("A1", "Ravi Kumar"), ("B2", "Sunita Devi")):
        cli.main(cli_env + ["add-customer", "--account", acc, "--name", name, "--installment", "100", "--total", "1000"])
    capsys.readouterr()

    assert cli.main(cli_env + ["list-customers", "--search", "SUNITA"]) == 0
    out = capsys.readouterr().out
    assert "B2\tSunita Devi" in out
    assert "Ravi" not in out
    assert "1 customer(s)" in out

    cli.main(cli_env + ["list-customers"])
    assert "2 customer(s)" in capsys.readouterr().out
