import asyncio
import json

import pandas as pd

import scm_cli
from engine import ControlTower, SimulationRunner
from engine_core import (
    DC_CHOKE_RISK,
    INVENTORY_RISK,
    SHIPMENT_RISK,
    ExpediteInbound,
    RebalanceTransfer,
    RerouteOverflow,
    Retender,
    Shipment,
)
from report import make_pdf

SEED = 20251212


def _tower(**kwargs):
    cfg = {"Snapshot": {"top_n": 5}}
    cfg.update(kwargs)
    return ControlTower(cfg, seed=SEED)


def _add_shipment(tower, shipment_id, **kwargs):
    fields = dict(
        id=shipment_id, kind="transfer", origin="DC-NJ", destination="DC-PA", sku="SKU-CLX-001",
        qty=400, carrier="CAR-OMNI", created_day=0, eta_days=4, base_transit_days=4,
        penalty=7000, status="in_transit",
    )
    fields.update(kwargs)
    s = Shipment(**fields)
    tower.world.shipments.insert(0, s)
    return s


def test_reset_restores_baseline():
    tower = _tower()
    inv = json.dumps(tower.world.inventory, sort_keys=True)
    tower.toggle_scenario("dcOutage")
    tower.execute_action(RerouteOverflow("DC-TX"))
    tower.run_days(3)
    tower.reset_to_baseline()
    assert tower.day == 0
    assert tower.action_log == []
    assert tower.world.overflow_boost == {}
    assert tower.world.scenario.outage_dc_id is None
    assert json.dumps(tower.world.inventory, sort_keys=True) == inv
    tower.reset_to_baseline(7)
    assert tower.seed == 7


def test_run_days_returns_daily_kpis():
    tower = _tower()
    df = tower.run_days(4)
    assert list(df["day"]) == [1, 2, 3, 4]
    assert df["service_risk"].between(0.03, 0.96).all()
    assert tower.day == 4


def test_run_days_is_reproducible():
    a = _tower().run_days(6)
    b = _tower().run_days(6)
    pd.testing.assert_frame_equal(a, b)


def test_recommendations_for_dc_choke():
    tower = _tower()
    _add_shipment(tower, "SHP-WAVE", kind="inbound", origin="PL-ATL", destination="DC-GA",
                  qty=5000, lane_id="LANE-PL-ATL-DC-GA")
    exc = tower.find_exception("EXC-DC-DC-GA")
    assert exc is not None and exc.type == DC_CHOKE_RISK
    recs = tower.recommended_actions(exc.id)
    assert isinstance(recs[-1].action, RerouteOverflow)
    assert recs[-1].action.dc_id == exc.dc_id
    assert all(isinstance(r.action, (RebalanceTransfer, RerouteOverflow)) for r in recs)


def test_recommendations_for_inventory_risk():
    tower = _tower(Actions={"expedite_qty": 900})
    for dc in tower.baseline.dcs:
        tower.world.inventory[dc.id]["SKU-CLX-005"] = 20000
    tower.world.inventory["DC-GA"]["SKU-CLX-005"] = 0
    exc = tower.find_exception("EXC-INV-DC-GA-SKU-CLX-005")
    assert exc is not None and exc.type == INVENTORY_RISK
    recs = tower.recommended_actions(exc.id)
    assert isinstance(recs[0].action, RebalanceTransfer)
    assert recs[0].action == tower.top_rebalance("SKU-CLX-005").to_action()
    assert recs[-1].action == ExpediteInbound("DC-GA", "SKU-CLX-005", 900)


def test_recommendations_for_late_shipment():
    tower = _tower()
    _add_shipment(tower, "SHP-LONG", kind="transfer", origin="DC-NJ", destination="DC-CA", miles=2400)
    exc = tower.find_exception("EXC-SHP-SHP-LONG")
    assert exc is not None and exc.type == SHIPMENT_RISK
    (rec,) = tower.recommended_actions(exc.id)
    best = tower.best_retender_quote(exc.shipment_id)
    assert rec.action == Retender(exc.shipment_id, best.carrier_id)
    assert best.expected_total == min(q.expected_total for q in tower.retender_quotes(exc.shipment_id))


def test_unknown_exception_has_no_recommendations():
    assert _tower().recommended_actions("EXC-NOPE") == []


def test_carrier_scorecard_flags_disruption():
    tower = _tower()
    assert set(tower.carrier_scorecard()["status"]) == {"Normal"}
    tower.toggle_scenario("carrierDisruption")
    card = tower.carrier_scorecard()
    disrupted = card[card["status"] == "Disrupted"]
    assert list(disrupted["carrier_id"]) == [tower.world.scenario.disrupted_carrier_id]


def test_at_risk_and_coverage_tables():
    tower = _tower()
    risky = tower.at_risk_shipments(limit=5)
    assert len(risky) == 5
    assert list(risky["late_prob"]) == sorted(risky["late_prob"], reverse=True)
    cov = tower.coverage_table("SKU-CLX-001")
    assert list(cov["dc_id"]) == [dc.id for dc in tower.baseline.dcs]
    assert (cov["doc"] >= 0).all()


def test_exceptions_frame_matches_ranking():
    tower = _tower()
    df = tower.exceptions_frame()
    assert list(df["id"]) == [e.id for e in tower.derive_kpis_and_exceptions().exceptions]


def test_snapshot_document(tmp_path):
    tower = _tower()
    tower.toggle_scenario("demandSpike")
    tower.tick()
    snap = tower.snapshot()
    for key in ("captured_at", "day", "scenario", "scenario_pinned", "overflow_boost", "kpis",
                "top_exceptions", "inventory", "shipments", "cost_index", "action_log"):
        assert key in snap
    assert snap["scenario"]["demandSpike"] is True
    assert snap["scenario_pinned"]["spike_sku_id"] is not None
    assert len(snap["top_exceptions"]) <= 5

    path = tower.export_snapshot(tmp_path / "out" / "snap.json")
    loaded = json.loads(path.read_text())
    assert loaded["day"] == 1
    assert tower.action_log[0].type == "SNAPSHOT_EXPORTED"


def test_baseline_export_is_stable(tmp_path):
    a = _tower()
    a.run_days(2)
    a.export_baseline(tmp_path / "a.json")
    ControlTower(seed=SEED).export_baseline(tmp_path / "b.json")
    assert (tmp_path / "a.json").read_text() == (tmp_path / "b.json").read_text()


def test_make_pdf(tmp_path):
    tower = _tower()
    tower.execute_action(RerouteOverflow("DC-IL"))
    snap = tower.export_snapshot(tmp_path / "snap.json")
    out = tmp_path / "audit.pdf"
    make_pdf(str(snap), str(out))
    assert out.exists()
    assert out.read_bytes()[:4] == b"%PDF"


def test_cli_writes_exports(tmp_path, capsys):
    snap = tmp_path / "snap.json"
    base = tmp_path / "base.json"
    scm_cli.main(["--seed", "7", "--days", "2", "--scenario", "dcOutage",
                  "--snapshot", str(snap), "--baseline", str(base)])
    out = capsys.readouterr().out
    assert "KPIs:" in out
    doc = json.loads(snap.read_text())
    assert doc["day"] == 2
    assert doc["scenario"]["dcOutage"] is True
    assert json.loads(base.read_text())["meta"]["seed"] == 7


def test_runner_ticks_until_stopped():
    tower = _tower()

    async def scenario():
        runner = SimulationRunner(tower, interval_s=0.01)
        runner.start()
        first = runner._task
        runner.start()
        assert runner._task is first
        await asyncio.sleep(0.2)
        await runner.stop()
        assert not runner.running
        day = tower.day
        await asyncio.sleep(0.05)
        return day

    day = asyncio.run(scenario())
    assert day > 0
    assert tower.day == day
