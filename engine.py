from __future__ import annotations
"""Session facade over ``engine_core``.

``ControlTower`` owns one :class:`~engine_core.World` and exposes the command
surface (toggle, execute, tick, reset), the pure query surface, and the
snapshot/baseline exports. ``SimulationRunner`` ticks a tower on an asyncio
loop until stopped.
"""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd

from engine_core import (
    DC_CHOKE_RISK,
    DEFAULT_CONFIG,
    INVENTORY_RISK,
    SCENARIO_FLAGS,
    SHIPMENT_RISK,
    Action,
    AuditLogEntry,
    Baseline,
    Derived,
    ExceptionRecord,
    ExpediteInbound,
    RerouteOverflow,
    Retender,
    RetenderQuote,
    TransferProposal,
    World,
    deep_merge,
    demand_per_day,
    derive_kpis_and_exceptions as _derive,
    execute_action as _execute,
    generate_baseline,
    in_transit_units,
    late_probability,
    lookup_sku,
    rebalance_proposals as _rebalance,
    retender_quotes as _quotes,
    round_half_up,
    scenario_multipliers,
    tick as _tick,
    toggle_scenario as _toggle,
    validate_config,
)

logger = logging.getLogger(__name__)


@dataclass
class Recommendation:
    label: str
    rationale: str
    impact: str
    action: Action


class ControlTower:
    """One simulation session: a Baseline, its World, and the commands/queries over them."""

    def __init__(self, cfg: Optional[Dict] = None, seed: Optional[int] = None):
        self.cfg = deep_merge(DEFAULT_CONFIG, cfg)
        if seed is not None:
            self.cfg["seed"] = int(seed)
        validate_config(self.cfg)
        self.baseline: Baseline
        self.world: World
        self.reset_to_baseline(self.cfg["seed"])

    # -- state accessors ----------------------------------------------------
    @property
    def seed(self) -> int:
        return self.baseline.seed

    @property
    def day(self) -> int:
        return self.world.day

    @property
    def action_log(self) -> List[AuditLogEntry]:
        return self.world.action_log

    # -- commands -----------------------------------------------------------
    def reset_to_baseline(self, seed: Optional[int] = None) -> None:
        if seed is None:
            seed = self.cfg["seed"]
        self.cfg["seed"] = int(seed)
        self.baseline = generate_baseline(int(seed))
        self.world = World.from_baseline(self.baseline)
        logger.info("Session reset to baseline seed=%s", seed)

    def toggle_scenario(self, flag: str) -> bool:
        return _toggle(self.world, flag)

    def execute_action(self, action: Union[Action, Dict]) -> Optional[AuditLogEntry]:
        return _execute(self.world, action)

    def tick(self) -> List[str]:
        delivered = _tick(self.world)
        logger.info("Advanced to day %d (%d delivered)", self.world.day, len(delivered))
        return delivered

    def run_days(self, n: int) -> pd.DataFrame:
        """Apply ``n`` ticks; one KPI row per simulated day."""
        rows = []
        for _ in range(int(n)):
            delivered = self.tick()
            k = self.derive_kpis_and_exceptions().kpis
            rows.append({
                "day": self.world.day,
                "value_at_risk": k.value_at_risk,
                "service_risk": k.service_risk,
                "avg_dc_util": k.avg_dc_util,
                "late_shipments": k.late_shipments,
                "delivered": len(delivered),
                "cost_index": self.world.cost_index[-1].index,
            })
        return pd.DataFrame(rows, columns=[
            "day", "value_at_risk", "service_risk", "avg_dc_util", "late_shipments", "delivered", "cost_index",
        ])

    # -- queries ------------------------------------------------------------
    def derive_kpis_and_exceptions(self) -> Derived:
        return _derive(self.world)

    def rebalance_proposals(self, sku_id: str) -> List[TransferProposal]:
        return _rebalance(self.world, sku_id)

    def retender_quotes(self, shipment_id: str) -> List[RetenderQuote]:
        return _quotes(self.world, shipment_id)

    def best_retender_quote(self, shipment_id: str) -> Optional[RetenderQuote]:
        quotes = self.retender_quotes(shipment_id)
        if not quotes:
            return None
        return min(quotes, key=lambda q: q.expected_total)

    def top_rebalance(self, sku_id: str) -> Optional[TransferProposal]:
        proposals = self.rebalance_proposals(sku_id)
        return proposals[0] if proposals else None

    def find_exception(self, exception_id: str) -> Optional[ExceptionRecord]:
        for e in self.derive_kpis_and_exceptions().exceptions:
            if e.id == exception_id:
                return e
        return None

    def worst_sku_at_dc(self, dc_id: str) -> Optional[str]:
        """SKU with the lowest days-of-cover at ``dc_id``."""
        m = scenario_multipliers(self.world)
        best_sku, best_doc = None, float("inf")
        for sku in self.baseline.skus:
            d = max(0.1, m.effective_demand(self.baseline, dc_id, sku.id))
            doc = self.world.inventory.get(dc_id, {}).get(sku.id, 0) / d
            if doc < best_doc:
                best_sku, best_doc = sku.id, doc
        return best_sku

    def recommended_actions(self, exception_id: str) -> List[Recommendation]:
        e = self.find_exception(exception_id)
        if e is None:
            logger.warning("No current exception %s", exception_id)
            return []

        out: List[Recommendation] = []
        if e.type == INVENTORY_RISK:
            best = self.top_rebalance(e.sku_id)
            if best:
                out.append(Recommendation(
                    label=f"Rebalance: transfer {best.qty:,} units ({lookup_sku(self.baseline, best.sku_id).name})",
                    rationale="Highest net value transfer for this SKU (benefit - transfer cost). Includes transit days.",
                    impact=f"Net value ~${best.net_value:,} | ETA {best.transit_days}d | reduces stockout exposure at {best.to_dc_id}",
                    action=best.to_action(),
                ))
            qty = int(self.cfg["Actions"]["expedite_qty"])
            out.append(Recommendation(
                label="Expedite inbound (1 day)",
                rationale="Fastest prevention when stockout risk is imminent; increases on-hand quickly.",
                impact=f"Adds ~{qty:,} units to {e.dc_id} next day.",
                action=ExpediteInbound(dc_id=e.dc_id, sku_id=e.sku_id, add_qty=qty),
            ))
        elif e.type == SHIPMENT_RISK:
            quote = self.best_retender_quote(e.shipment_id)
            if quote:
                out.append(Recommendation(
                    label="Re-tender to lowest expected total cost",
                    rationale="Expected total cost = freight + (late probability x penalty). Picks the cheapest risk-adjusted option.",
                    impact=f"Carrier {quote.carrier_id}: expected total ~${quote.expected_total:,}.",
                    action=Retender(shipment_id=e.shipment_id, new_carrier_id=quote.carrier_id),
                ))
        elif e.type == DC_CHOKE_RISK:
            sku_id = self.worst_sku_at_dc(e.dc_id)
            best = self.top_rebalance(sku_id) if sku_id else None
            if best:
                out.append(Recommendation(
                    label=f"Shift volume away: rebalance {best.qty:,} units of {lookup_sku(self.baseline, best.sku_id).name}",
                    rationale="Reduce outbound pressure by shifting allocation to less-utilized DCs.",
                    impact=f"Net value ~${best.net_value:,} | ETA {best.transit_days}d",
                    action=best.to_action(),
                ))
            out.append(Recommendation(
                label="Activate overflow / reroute plan",
                rationale="Temporary throughput relief (labor, slotting, overflow trailer yard). Reduces choke risk.",
                impact="Effective capacity x1.18 for 3 days.",
                action=RerouteOverflow(dc_id=e.dc_id),
            ))
        return out

    def carrier_scorecard(self) -> pd.DataFrame:
        m = scenario_multipliers(self.world)
        rows = []
        for c in self.baseline.carriers:
            delta = m.carrier_on_time_delta.get(c.id, 0.0)
            rows.append({
                "carrier_id": c.id,
                "name": c.name,
                "on_time": round_half_up(min(0.98, max(0.65, c.on_time + delta)), 3),
                "cost_index": c.cost_index,
                "capacity_index": c.capacity_index,
                "status": "Disrupted" if delta < 0 else "Normal",
            })
        return pd.DataFrame(rows)

    def at_risk_shipments(self, limit: int = 12) -> pd.DataFrame:
        m = scenario_multipliers(self.world)
        rows = []
        for s in self.world.shipments:
            if s.delivered:
                continue
            rows.append({
                "shipment_id": s.id,
                "kind": s.kind,
                "lane": f"{s.origin} → {s.destination}",
                "sku_id": s.sku,
                "qty": s.qty,
                "carrier": s.carrier,
                "eta_days": s.eta_days,
                "late_prob": late_probability(self.world, s, m),
            })
        rows.sort(key=lambda r: -r["late_prob"])
        return pd.DataFrame(rows[:limit], columns=[
            "shipment_id", "kind", "lane", "sku_id", "qty", "carrier", "eta_days", "late_prob",
        ])

    def coverage_table(self, sku_id: str) -> pd.DataFrame:
        m = scenario_multipliers(self.world)
        rows = []
        for dc in self.baseline.dcs:
            d = demand_per_day(self.world, dc.id, sku_id, m)
            on_hand = self.world.inventory.get(dc.id, {}).get(sku_id, 0)
            rows.append({
                "dc_id": dc.id,
                "demand_per_day": d,
                "on_hand": on_hand,
                "in_transit": in_transit_units(self.world, dc.id, sku_id),
                "doc": on_hand / max(0.1, d),
            })
        return pd.DataFrame(rows)

    def exceptions_frame(self) -> pd.DataFrame:
        cols = ["id", "type", "value_at_risk", "risk_score", "dc_id", "sku_id", "shipment_id", "why"]
        records = [asdict(e) for e in self.derive_kpis_and_exceptions().exceptions]
        return pd.DataFrame(records, columns=cols) if records else pd.DataFrame(columns=cols)

    # -- exports ------------------------------------------------------------
    def snapshot(self, top_n: Optional[int] = None) -> Dict:
        top_n = int(top_n or self.cfg["Snapshot"]["top_n"])
        derived = self.derive_kpis_and_exceptions()
        sc = self.world.scenario
        return {
            "captured_at": self.world.clock(),
            "day": self.world.day,
            "seed": self.seed,
            "scenario": sc.flags(),
            "scenario_pinned": sc.pins(),
            "overflow_boost": dict(self.world.overflow_boost),
            "kpis": asdict(derived.kpis),
            "top_exceptions": [e.to_dict() for e in derived.exceptions[:top_n]],
            "inventory": {dc: dict(row) for dc, row in self.world.inventory.items()},
            "shipments": [asdict(s) for s in self.world.shipments],
            "cost_index": [asdict(p) for p in self.world.cost_index],
            "action_log": [asdict(e) for e in self.world.action_log],
        }

    def export_snapshot(self, path: Union[str, Path], top_n: Optional[int] = None) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        doc = self.snapshot(top_n)
        path.write_text(json.dumps(doc, indent=2), encoding="utf-8")
        self.world.log("SNAPSHOT_EXPORTED", "Exported JSON snapshot for audit/sharing.", {"path": str(path)})
        logger.info("Snapshot saved → %s", path)
        return path

    def export_baseline(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.baseline.to_dict(), indent=2), encoding="utf-8")
        logger.info("Baseline dataset saved → %s", path)
        return path


class SimulationRunner:
    """Ticks ``tower`` every ``interval_s`` seconds on the running event loop."""

    def __init__(self, tower: ControlTower, interval_s: Optional[float] = None):
        self.tower = tower
        self.interval_s = float(interval_s if interval_s is not None else tower.cfg["Simulation"]["tick_interval_s"])
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            self.tower.tick()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("Simulation runner started (every %.2fs)", self.interval_s)

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Simulation runner stopped at day %d", self.tower.day)


__all__ = [
    "SCENARIO_FLAGS",
    "ControlTower",
    "Recommendation",
    "SimulationRunner",
]
