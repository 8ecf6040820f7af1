"""
CLI command tests (flask settlement / payouts / treasury).
"""

from market.models import Order

from conftest import payouts_for, treasury_row


class TestSettlementVerifyCommand:

    def test_verify_settles_through_manual_verify(self, app, db_session, scenario_order):
        runner = app.test_cli_runner()

        result = runner.invoke(args=["settlement", "verify", str(scenario_order.id)])

        assert result.exit_code == 0
        assert f"PASS Order {scenario_order.id} settled (mode=atomic)" in result.output
        order = db_session.get(Order, scenario_order.id)
        assert order.is_paid is True
        assert order.tracking_events[-1].title == "Payment verified manually"
        assert len(payouts_for(scenario_order.id)) == 1

    def test_verify_twice_is_skipped(self, app, db_session, scenario_order):
        runner = app.test_cli_runner()
        runner.invoke(args=["settlement", "verify", str(scenario_order.id)])

        result = runner.invoke(args=["settlement", "verify", str(scenario_order.id)])

        assert f"SKIP Order {scenario_order.id} already paid" in result.output
        assert treasury_row().total_orders_processed == 1

    def test_verify_with_actor_email(self, app, db_session, admin, scenario_order):
        runner = app.test_cli_runner()

        result = runner.invoke(
            args=["settlement", "verify", str(scenario_order.id), "--actor-email", admin.email]
        )

        assert "PASS" in result.output
        assert db_session.get(Order, scenario_order.id).is_paid is True

    def test_verify_unknown_actor(self, app, db_session, scenario_order):
        runner = app.test_cli_runner()

        result = runner.invoke(
            args=["settlement", "verify", str(scenario_order.id), "--actor-email", "nobody@market.test"]
        )

        assert "FAIL No user with email nobody@market.test" in result.output
        assert db_session.get(Order, scenario_order.id).is_paid is False

    def test_verify_unknown_order(self, app, db_session):
        runner = app.test_cli_runner()

        result = runner.invoke(args=["settlement", "verify", "987654"])

        assert "FAIL Order 987654 not found" in result.output


class TestTreasuryAndPayoutCommands:

    def test_treasury_show(self, app, db_session, scenario_order):
        runner = app.test_cli_runner()
        runner.invoke(args=["settlement", "verify", str(scenario_order.id)])

        result = runner.invoke(args=["treasury", "show"])

        assert "Seller pending balance:  Rp 80.000" in result.output
        assert "Pending payouts: 1 (Rp 80.000)" in result.output

    def test_payouts_complete(self, app, db_session, scenario_order):
        runner = app.test_cli_runner()
        runner.invoke(args=["settlement", "verify", str(scenario_order.id)])
        payout_id = payouts_for(scenario_order.id)[0].id

        result = runner.invoke(args=["payouts", "complete", str(payout_id)])

        assert f"PASS Payout {payout_id} completed: Rp 80.000" in result.output
        assert treasury_row().seller_pending_balance == 0
