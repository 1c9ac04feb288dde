import json
from datetime import timedelta

from sqlalchemy import update

from atelier.core.database import get_db_session, subscriptions
from atelier.features.ledger.service import try_deduct
from atelier.features.subscriptions.service import provision_subscription
from atelier.scripts.metering_admin import main


def test_sweep_command_prints_stats(capsys, t0):
    provision_subscription("cli-user", now=t0)

    code = main(["sweep", "--now", (t0 + timedelta(days=30)).isoformat()])
    out = json.loads(capsys.readouterr().out)
    assert code == 0
    assert out["renewed"] == 1


def test_reconcile_command_exit_code_reflects_unfixed_drift(capsys):
    try_deduct("cli-user", 10)
    with get_db_session() as session:
        session.execute(
            update(subscriptions).where(subscriptions.c.user_id == "cli-user").values(tokens_used=99)
        )

    assert main(["reconcile", "cli-user"]) == 1
    capsys.readouterr()
    assert main(["reconcile", "cli-user", "--fix"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["fixed"] is True


def test_history_command(capsys):
    try_deduct("cli-user", 3, reason="caption")
    assert main(["history", "cli-user"]) == 0
    events = json.loads(capsys.readouterr().out)
    assert events[0]["reason"] == "caption"
