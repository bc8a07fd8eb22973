from __future__ import annotations
import copy
import logging
import math
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, ClassVar, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Config helpers
# ---------------------------------------------------------------------------
DEFAULT_SEED = 20251212

DEFAULT_CONFIG: Dict = {
    "seed": DEFAULT_SEED,
    "Simulation": {"tick_interval_s": 1.2, "days": 0},
    "Snapshot": {"top_n": 30},
    "Actions": {"expedite_qty": 1200},
    "Logging": {"level": "INFO"},
}


def deep_merge(base: Dict, overrides: Optional[Dict]) -> Dict:
    """Deep copy of ``base`` with ``overrides`` layered in section by section."""
    if not overrides:
        return copy.deepcopy(base)
    out = copy.deepcopy(base)
    for key, val in overrides.items():
        if isinstance(val, dict) and isinstance(out.get(key), dict):
            out[key] = deep_merge(out[key], val)
        else:
            out[key] = copy.deepcopy(val)
    return out


def validate_config(cfg: Dict, required: Optional[Dict[str, Sequence[str]]] = None) -> None:
    """Check a control-tower session config before a tower is built.

    Parameters
    ----------
    cfg : Dict
        Merged session config (``Simulation``, ``Snapshot``, ``Actions`` sections).
    required : Dict[str, Sequence[str]]
        Section name to the keys it must carry; defaults to the tick interval,
        day count, snapshot size and expedite quantity.

    Raises TypeError for a non-dict, KeyError naming the missing ``Section.key``
    and ValueError for a non-positive tick interval, negative day count or an
    empty snapshot.
    """

    if not isinstance(cfg, dict):
        raise TypeError("Configuration must be a dictionary")
    required = required or {
        "Simulation": ("tick_interval_s", "days"),
        "Snapshot": ("top_n",),
        "Actions": ("expedite_qty",),
    }
    for section, keys in required.items():
        if section not in cfg:
            raise KeyError(f"Missing configuration section '{section}'")
        for key in keys:
            if key not in cfg[section]:
                raise KeyError(f"Missing key '{section}.{key}'")

    sim = cfg.get("Simulation", {})
    if "tick_interval_s" in sim and float(sim["tick_interval_s"]) <= 0:
        raise ValueError("Simulation.tick_interval_s must be positive")
    if "days" in sim and int(sim["days"]) < 0:
        raise ValueError("Simulation.days must be >= 0")
    snap = cfg.get("Snapshot", {})
    if "top_n" in snap and int(snap["top_n"]) < 1:
        raise ValueError("Snapshot.top_n must be >= 1")


# ---------------------------------------------------------------------------
# Numeric helpers
# ---------------------------------------------------------------------------

def clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def sigmoid(x: float) -> float:
    return 1.0 / (1.0 + math.exp(-x))


def round_half_up(x: float, digits: int = 0) -> float:
    """Round half away from -inf (``floor(x + 0.5)``), unlike Python's banker's rounding."""
    if digits == 0:
        return math.floor(x + 0.5)
    scale = 10 ** digits
    return math.floor(x * scale + 0.5) / scale


def rint(x: float) -> int:
    return int(round_half_up(x))


EARTH_RADIUS_MI = 3958.8


def haversine_miles(a: "Node", b: "Node") -> float:
    d_lat = math.radians(b.lat - a.lat)
    d_lon = math.radians(b.lon - a.lon)
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    return 2 * EARTH_RADIUS_MI * math.asin(math.sqrt(h))


def distance_matrix(nodes: Sequence["Node"]) -> np.ndarray:
    """Pairwise great-circle miles between ``nodes`` (same order on both axes)."""
    lat = np.radians(np.array([n.lat for n in nodes], dtype=float))
    lon = np.radians(np.array([n.lon for n in nodes], dtype=float))
    d_lat = lat[None, :] - lat[:, None]
    d_lon = lon[None, :] - lon[:, None]
    h = np.sin(d_lat / 2) ** 2 + np.cos(lat)[:, None] * np.cos(lat)[None, :] * np.sin(d_lon / 2) ** 2
    return 2 * EARTH_RADIUS_MI * np.arcsin(np.sqrt(np.clip(h, 0.0, 1.0)))


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Random stream
# ---------------------------------------------------------------------------
_MASK32 = 0xFFFFFFFF


class RandomStream:
    """Seeded 32-bit stream (mulberry32) producing floats in [0, 1).

    Two streams built from the same seed yield the same sequence forever, which
    keeps baselines, scenario pins and session draws reproducible.
    """

    def __init__(self, seed: int):
        self.seed = int(seed)
        self._state = self.seed & _MASK32

    def next(self) -> float:
        self._state = (self._state + 0x6D2B79F5) & _MASK32
        a = self._state
        t = ((a ^ (a >> 15)) * (1 | a)) & _MASK32
        t = ((t + (((t ^ (t >> 7)) * (61 | t)) & _MASK32)) & _MASK32) ^ t
        return ((t ^ (t >> 14)) & _MASK32) / 4294967296.0

    def uniform(self, lo: float, hi: float) -> float:
        return lo + self.next() * (hi - lo)

    def randint(self, lo: int, span: int) -> int:
        """Integer in ``[lo, lo + span)``."""
        return lo + int(math.floor(self.next() * span))

    def choice(self, seq: Sequence):
        return seq[int(math.floor(self.next() * len(seq)))]

    def shuffle(self, seq: Sequence) -> List:
        """Fisher–Yates permutation of a copy of ``seq``."""
        out = list(seq)
        for i in range(len(out) - 1, 0, -1):
            j = int(math.floor(self.next() * (i + 1)))
            out[i], out[j] = out[j], out[i]
        return out


# sub-seed offsets added to the base seed
PIN_OFFSETS = {"dc_outage": 11, "carrier_disruption": 22, "demand_spike": 33}
SESSION_STREAM_OFFSET = 44


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Node:
    id: str
    name: str
    kind: str  # "plant" | "dc"
    lat: float
    lon: float
    capacity: Optional[int] = None


@dataclass(frozen=True)
class Lane:
    id: str
    origin: str
    destination: str
    miles: int
    transit_days: int
    rate_per_mile: float


@dataclass(frozen=True)
class Carrier:
    id: str
    name: str
    on_time: float
    cost_index: float
    capacity_index: float


@dataclass(frozen=True)
class Sku:
    id: str
    name: str
    unit_price: float
    unit_margin: float
    demand_class: str  # "fast" | "med" | "slow" | "seasonal"


@dataclass(frozen=True)
class CostPoint:
    day: int
    index: float


@dataclass
class Shipment:
    id: str
    kind: str  # "inbound" | "transfer"
    origin: str
    destination: str
    sku: str
    qty: int
    carrier: str
    created_day: int
    eta_days: int
    base_transit_days: int
    penalty: float
    status: str  # "in_transit" | "arriving" | "delivered"
    cost: int = 0
    lane_id: Optional[str] = None
    miles: Optional[int] = None

    @property
    def delivered(self) -> bool:
        return self.status == "delivered"


Inventory = Dict[str, Dict[str, int]]
DemandTable = Dict[str, Dict[str, float]]


@dataclass(frozen=True)
class Baseline:
    """Immutable world generated once per seed."""

    seed: int
    skus: Tuple[Sku, ...]
    plants: Tuple[Node, ...]
    dcs: Tuple[Node, ...]
    carriers: Tuple[Carrier, ...]
    lanes: Tuple[Lane, ...]
    inventory: Inventory
    demand: DemandTable
    cost_index: Tuple[CostPoint, ...]
    shipments: Tuple[Shipment, ...]

    @property
    def nodes(self) -> Tuple[Node, ...]:
        return self.plants + self.dcs

    def lane_between(self, origin: str, destination: str) -> Optional[Lane]:
        for lane in self.lanes:
            if lane.origin == origin and lane.destination == destination:
                return lane
        return None

    def to_dict(self) -> Dict:
        return {
            "meta": {"seed": self.seed},
            "skus": [asdict(s) for s in self.skus],
            "nodes": [asdict(n) for n in self.nodes],
            "plants": [asdict(n) for n in self.plants],
            "dcs": [asdict(n) for n in self.dcs],
            "carriers": [asdict(c) for c in self.carriers],
            "lanes": [asdict(lane) for lane in self.lanes],
            "inventory": copy.deepcopy(self.inventory),
            "demand": copy.deepcopy(self.demand),
            "cost_index": [asdict(p) for p in self.cost_index],
            "shipments": [asdict(s) for s in self.shipments],
        }


SCENARIO_FLAGS: Dict[str, str] = {
    "dcOutage": "dc_outage",
    "carrierDisruption": "carrier_disruption",
    "demandSpike": "demand_spike",
    "cyberDegraded": "cyber_degraded",
}


@dataclass
class ScenarioState:
    dc_outage: bool = False
    carrier_disruption: bool = False
    demand_spike: bool = False
    cyber_degraded: bool = False
    outage_dc_id: Optional[str] = None
    disrupted_carrier_id: Optional[str] = None
    spike_sku_id: Optional[str] = None

    def flags(self) -> Dict[str, bool]:
        return {camel: getattr(self, attr) for camel, attr in SCENARIO_FLAGS.items()}

    def pins(self) -> Dict[str, Optional[str]]:
        return {
            "outage_dc_id": self.outage_dc_id,
            "disrupted_carrier_id": self.disrupted_carrier_id,
            "spike_sku_id": self.spike_sku_id,
        }


@dataclass
class AuditLogEntry:
    ts: str
    day: int
    type: str
    detail: str
    meta: Dict = field(default_factory=dict)


class ReentrantMutationError(RuntimeError):
    """Raised when a mutation is started while another one is still applying."""


@dataclass
class World:
    """Mutable session state layered over an immutable :class:`Baseline`."""

    baseline: Baseline
    inventory: Inventory
    shipments: List[Shipment]
    cost_index: List[CostPoint]
    stream: RandomStream
    day: int = 0
    scenario: ScenarioState = field(default_factory=ScenarioState)
    action_log: List[AuditLogEntry] = field(default_factory=list)
    overflow_boost: Dict[str, int] = field(default_factory=dict)
    clock: Callable[[], str] = _utc_now
    mutating: bool = False

    @classmethod
    def from_baseline(cls, baseline: Baseline) -> "World":
        """Copy exactly the dynamic parts of ``baseline``."""
        return cls(
            baseline=baseline,
            inventory={dc: dict(row) for dc, row in baseline.inventory.items()},
            shipments=[copy.copy(s) for s in baseline.shipments],
            cost_index=list(baseline.cost_index),
            stream=RandomStream(baseline.seed + SESSION_STREAM_OFFSET),
        )

    def clone(self) -> "World":
        return World(
            baseline=self.baseline,
            inventory={dc: dict(row) for dc, row in self.inventory.items()},
            shipments=[copy.copy(s) for s in self.shipments],
            cost_index=list(self.cost_index),
            stream=copy.copy(self.stream),
            day=self.day,
            scenario=copy.copy(self.scenario),
            action_log=[copy.deepcopy(e) for e in self.action_log],
            overflow_boost=dict(self.overflow_boost),
            clock=self.clock,
        )

    def log(self, kind: str, detail: str, meta: Optional[Dict] = None) -> AuditLogEntry:
        entry = AuditLogEntry(ts=self.clock(), day=self.day, type=kind, detail=detail, meta=meta or {})
        self.action_log.insert(0, entry)
        return entry

    def find_shipment(self, shipment_id: str) -> Optional[Shipment]:
        for s in self.shipments:
            if s.id == shipment_id:
                return s
        return None


@contextmanager
def _mutation(world: World) -> Iterator[World]:
    if world.mutating:
        raise ReentrantMutationError("World is already being mutated; tick/execute_action are not re-entrant")
    world.mutating = True
    try:
        yield world
    finally:
        world.mutating = False


def _ensure_readable(world: World) -> None:
    if world.mutating:
        raise ReentrantMutationError("Queries must not run against a partially-updated World")


# ---------------------------------------------------------------------------
# Lookups (soft-fail to conservative defaults)
# ---------------------------------------------------------------------------
_DEFAULT_CARRIER = Carrier(id="?", name="Unknown carrier", on_time=0.88, cost_index=1.0, capacity_index=1.0)


def lookup_carrier(baseline: Baseline, carrier_id: str) -> Carrier:
    for c in baseline.carriers:
        if c.id == carrier_id:
            return c
    logger.warning("Unknown carrier %s, using default record", carrier_id)
    return Carrier(carrier_id, carrier_id, _DEFAULT_CARRIER.on_time, _DEFAULT_CARRIER.cost_index, _DEFAULT_CARRIER.capacity_index)


def lookup_sku(baseline: Baseline, sku_id: str) -> Sku:
    for s in baseline.skus:
        if s.id == sku_id:
            return s
    logger.warning("Unknown SKU %s, using default record", sku_id)
    return Sku(id=sku_id, name=sku_id, unit_price=0.0, unit_margin=1.0, demand_class="med")


def lookup_dc(baseline: Baseline, dc_id: str) -> Node:
    for dc in baseline.dcs:
        if dc.id == dc_id:
            return dc
    logger.warning("Unknown DC %s, using default record", dc_id)
    return Node(id=dc_id, name=dc_id, kind="dc", lat=0.0, lon=0.0, capacity=1000)


def lookup_lane(baseline: Baseline, lane_id: Optional[str]) -> Lane:
    for lane in baseline.lanes:
        if lane.id == lane_id:
            return lane
    logger.warning("Unknown lane %s, falling back to %s", lane_id, baseline.lanes[0].id)
    return baseline.lanes[0]


def shipment_miles(baseline: Baseline, shipment: Shipment) -> int:
    if shipment.kind == "inbound":
        return lookup_lane(baseline, shipment.lane_id).miles
    return int(shipment.miles or 0)


# ---------------------------------------------------------------------------
# Baseline generator
# ---------------------------------------------------------------------------
SKUS = (
    Sku("SKU-CLX-001", "Disinfecting Wipes 35ct", 6.49, 2.10, "fast"),
    Sku("SKU-CLX-002", "Bleach 121oz", 4.99, 1.60, "fast"),
    Sku("SKU-CLX-003", "Trash Bags 13gal 80ct", 10.99, 3.10, "med"),
    Sku("SKU-CLX-004", "Pine-Sol 60oz", 5.79, 1.90, "med"),
    Sku("SKU-CLX-005", "Glad Wrap 200sqft", 4.59, 1.35, "slow"),
    Sku("SKU-CLX-006", "Kingsford Charcoal 16lb", 12.99, 3.60, "seasonal"),
)

PLANTS = (
    Node("PL-ATL", "Plant - Atlanta, GA", "plant", 33.7490, -84.3880),
    Node("PL-CHI", "Plant - Chicago, IL", "plant", 41.8781, -87.6298),
    Node("PL-DAL", "Plant - Dallas, TX", "plant", 32.7767, -96.7970),
    Node("PL-LAX", "Plant - Los Angeles, CA", "plant", 34.0522, -118.2437),
)

DCS = (
    Node("DC-NJ", "DC - New Jersey", "dc", 40.0583, -74.4057, 1250),
    Node("DC-PA", "DC - Central PA", "dc", 40.2732, -76.8867, 1050),
    Node("DC-GA", "DC - Atlanta", "dc", 33.7490, -84.3880, 980),
    Node("DC-TX", "DC - Dallas", "dc", 32.7767, -96.7970, 1120),
    Node("DC-IL", "DC - Joliet", "dc", 41.5250, -88.0817, 1000),
    Node("DC-CA", "DC - Inland Empire", "dc", 34.1064, -117.5931, 1320),
)

CARRIERS = (
    Carrier("CAR-OMNI", "OmniTrans", 0.91, 1.00, 1.00),
    Carrier("CAR-NOVA", "Nova Freight", 0.88, 0.96, 0.92),
    Carrier("CAR-ARROW", "Arrow Logistics", 0.93, 1.06, 0.98),
    Carrier("CAR-HARBOR", "HarborLine", 0.86, 0.93, 0.88),
)

# (low, span) per demand class
INVENTORY_BASE = {"fast": (2200, 900), "med": (1600, 800), "slow": (900, 500), "seasonal": (1300, 1200)}
DEMAND_BASE = {"fast": (160, 60), "med": (90, 40), "slow": (45, 20), "seasonal": (60, 70)}
COASTAL_DCS = {"DC-CA", "DC-NJ"}
WEST_DCS = {"DC-CA"}
EAST_DCS = {"DC-NJ", "DC-PA"}

INBOUND_SHIPMENTS = 34
TRANSFER_SHIPMENTS = 10
INBOUND_PENALTY = 8500
TRANSFER_PENALTY = 6000
EXPEDITE_PENALTY = 9000
DEFAULT_PENALTY = 7000
FREIGHT_RATE = 2.45
EXPEDITE_RATE = 3.2


def lane_transit_days(miles: float) -> int:
    return int(clamp(round_half_up(miles / 520 + 1.2), 1, 7))


def dc_transit_days(miles: float) -> int:
    return int(clamp(round_half_up(miles / 520 + 1.1), 1, 6))


def freight_cost(miles: float, carrier: Carrier) -> int:
    return rint(miles * FREIGHT_RATE * carrier.cost_index)


def generate_baseline(seed: int = DEFAULT_SEED) -> Baseline:
    """Build the reproducible baseline world for ``seed``.

    Draw order is fixed (lane rates, inventory, demand, cost index, inbound
    shipments, transfers) so identical seeds give identical bundles.
    """

    rand = RandomStream(seed)
    carrier_by_id = {c.id: c for c in CARRIERS}

    lanes: List[Lane] = []
    for p in PLANTS:
        for d in DCS:
            miles = haversine_miles(p, d)
            rate = 2.10 + rand.next() * 0.75
            lanes.append(Lane(
                id=f"LANE-{p.id}-{d.id}",
                origin=p.id,
                destination=d.id,
                miles=rint(miles),
                transit_days=lane_transit_days(miles),
                rate_per_mile=round_half_up(rate, 2),
            ))
    lane_by_pair = {(lane.origin, lane.destination): lane for lane in lanes}

    inventory: Inventory = {}
    for dc in DCS:
        inventory[dc.id] = {}
        for sku in SKUS:
            low, span = INVENTORY_BASE[sku.demand_class]
            base = rand.randint(low, span)
            coast = 1.12 if dc.id in COASTAL_DCS else 1.00
            inventory[dc.id][sku.id] = int(math.floor(base * coast * (0.75 + rand.next() * 0.6)))

    demand: DemandTable = {}
    for dc in DCS:
        demand[dc.id] = {}
        for sku in SKUS:
            low, span = DEMAND_BASE[sku.demand_class]
            base = low + rand.next() * span
            west = 1.14 if dc.id in WEST_DCS else 1.00
            east = 1.10 if dc.id in EAST_DCS else 1.00
            demand[dc.id][sku.id] = round_half_up(base * west * east, 1)

    cost_index: List[CostPoint] = []
    v = 1.00 + (rand.next() * 0.08 - 0.04)
    for i in range(13, -1, -1):
        v = v + (rand.next() * 0.02 - 0.01)
        cost_index.append(CostPoint(day=-i, index=round_half_up(clamp(v, 0.85, 1.25), 3)))

    shipments: List[Shipment] = []
    ship_no = 1000
    carrier_ids = [c.id for c in CARRIERS]
    dc_ids = [d.id for d in DCS]

    for _ in range(INBOUND_SHIPMENTS):
        plant = rand.choice(PLANTS).id
        dc = rand.choice(DCS).id
        lane = lane_by_pair[(plant, dc)]
        sku = rand.choice(SKUS).id
        qty = rand.randint(600, 900)
        carrier = rand.choice(carrier_ids)
        progress = rand.next()
        eta = int(clamp(math.ceil(lane.transit_days * (1 - progress)), 0, 7))
        shipments.append(Shipment(
            id=f"SHP-{ship_no}",
            kind="inbound",
            origin=plant,
            destination=dc,
            sku=sku,
            qty=qty,
            carrier=carrier,
            created_day=0,
            eta_days=eta,
            base_transit_days=lane.transit_days,
            penalty=INBOUND_PENALTY,
            status="arriving" if eta == 0 else "in_transit",
            lane_id=lane.id,
            cost=freight_cost(lane.miles, carrier_by_id[carrier]),
        ))
        ship_no += 1

    for _ in range(TRANSFER_SHIPMENTS):
        from_dc = rand.choice(dc_ids)
        to_dc = rand.choice(dc_ids)
        if to_dc == from_dc:
            to_dc = rand.choice(dc_ids)
        sku = rand.choice(SKUS).id
        qty = rand.randint(300, 600)
        miles = rand.randint(350, 850)
        days = dc_transit_days(miles)
        carrier = rand.choice(carrier_ids)
        eta = int(clamp(math.ceil(days * (0.3 + rand.next() * 0.8)), 0, 6))
        shipments.append(Shipment(
            id=f"SHP-{ship_no}",
            kind="transfer",
            origin=from_dc,
            destination=to_dc,
            sku=sku,
            qty=qty,
            carrier=carrier,
            created_day=0,
            eta_days=eta,
            base_transit_days=days,
            penalty=TRANSFER_PENALTY,
            status="in_transit",
            miles=miles,
            cost=freight_cost(miles, carrier_by_id[carrier]),
        ))
        ship_no += 1

    logger.debug("Generated baseline seed=%s with %d shipments", seed, len(shipments))
    return Baseline(
        seed=int(seed),
        skus=SKUS,
        plants=PLANTS,
        dcs=DCS,
        carriers=CARRIERS,
        lanes=tuple(lanes),
        inventory=inventory,
        demand=demand,
        cost_index=tuple(cost_index),
        shipments=tuple(shipments),
    )


# ---------------------------------------------------------------------------
# Scenario model
# ---------------------------------------------------------------------------
OUTAGE_CAPACITY_MULT = 0.42
RELIEF_CAPACITY_MULT = 1.18
DISRUPTED_ON_TIME_DELTA = -0.14
SPIKE_DEMAND_MULT = 1.28
CYBER_PLANNING_FRICTION = 0.18
CYBER_DEMAND_FRICTION = 1.05
RELIEF_DAYS = 3


@dataclass
class Multipliers:
    dc_cap_mult: Dict[str, float]
    carrier_on_time_delta: Dict[str, float]
    demand_mult: Dict[str, float]
    planning_friction: float
    demand_friction: float

    def effective_demand(self, baseline: Baseline, dc_id: str, sku_id: str) -> float:
        base = baseline.demand.get(dc_id, {}).get(sku_id, 0.0)
        return base * self.demand_mult.get(sku_id, 1.0) * self.demand_friction


def pick_pinned(baseline: Baseline, flag: str) -> str:
    """Entity hit by ``flag``; depends only on the base seed."""
    pool: Sequence = {
        "dc_outage": baseline.dcs,
        "carrier_disruption": baseline.carriers,
        "demand_spike": baseline.skus,
    }[flag]
    return RandomStream(baseline.seed + PIN_OFFSETS[flag]).choice(pool).id


_PIN_ATTR = {
    "dc_outage": "outage_dc_id",
    "carrier_disruption": "disrupted_carrier_id",
    "demand_spike": "spike_sku_id",
}


def toggle_scenario(world: World, flag: str) -> bool:
    """Flip a disruption toggle, pinning or clearing its entity. Returns the new value."""
    attr = SCENARIO_FLAGS.get(flag, flag)
    if attr not in SCENARIO_FLAGS.values():
        raise KeyError(f"Unknown scenario flag '{flag}'")
    with _mutation(world):
        value = not getattr(world.scenario, attr)
        setattr(world.scenario, attr, value)
        pin_attr = _PIN_ATTR.get(attr)
        if pin_attr:
            if value and getattr(world.scenario, pin_attr) is None:
                setattr(world.scenario, pin_attr, pick_pinned(world.baseline, attr))
            elif not value:
                setattr(world.scenario, pin_attr, None)
        logger.info("Scenario %s -> %s (pins=%s)", attr, value, world.scenario.pins())
    return value


def _active_pin(world: World, flag: str) -> Optional[str]:
    if not getattr(world.scenario, flag):
        return None
    return getattr(world.scenario, _PIN_ATTR[flag]) or pick_pinned(world.baseline, flag)


def scenario_multipliers(world: World) -> Multipliers:
    """Fresh multiplier tables for the current scenario and relief counters."""
    baseline = world.baseline
    dc_cap = {dc.id: 1.0 for dc in baseline.dcs}
    on_time = {c.id: 0.0 for c in baseline.carriers}
    demand = {s.id: 1.0 for s in baseline.skus}

    outage_dc = _active_pin(world, "dc_outage")
    if outage_dc:
        dc_cap[outage_dc] = OUTAGE_CAPACITY_MULT
    disrupted = _active_pin(world, "carrier_disruption")
    if disrupted:
        on_time[disrupted] = DISRUPTED_ON_TIME_DELTA
    spike = _active_pin(world, "demand_spike")
    if spike:
        demand[spike] = SPIKE_DEMAND_MULT

    cyber = world.scenario.cyber_degraded
    for dc_id, days_left in world.overflow_boost.items():
        if days_left > 0:
            dc_cap[dc_id] = dc_cap.get(dc_id, 1.0) * RELIEF_CAPACITY_MULT

    return Multipliers(
        dc_cap_mult=dc_cap,
        carrier_on_time_delta=on_time,
        demand_mult=demand,
        planning_friction=CYBER_PLANNING_FRICTION if cyber else 0.0,
        demand_friction=CYBER_DEMAND_FRICTION if cyber else 1.0,
    )


# ---------------------------------------------------------------------------
# Risk model
# ---------------------------------------------------------------------------

def cost_index_drift(series: Sequence[CostPoint]) -> float:
    if len(series) < 2:
        return 0.0
    a = series[-2].index
    b = series[-1].index
    return (b - a) / a


def late_probability_score(
    miles: float,
    on_time_adj: float,
    fuel_volatility: float,
    outage_touch: float,
    planning_friction: float,
) -> float:
    x = (
        1.15 * (miles / 1000 - 0.7)
        + 2.00 * (1 - on_time_adj)
        + 2.25 * fuel_volatility
        + 1.25 * outage_touch
        + 1.55 * planning_friction
    )
    return clamp(sigmoid(x), 0.03, 0.92)


def late_probability(world: World, shipment: Shipment, multipliers: Multipliers) -> float:
    baseline = world.baseline
    miles = shipment_miles(baseline, shipment)
    carrier = lookup_carrier(baseline, shipment.carrier)
    on_time_adj = clamp(carrier.on_time + multipliers.carrier_on_time_delta.get(shipment.carrier, 0.0), 0.65, 0.98)
    fuel_vol = clamp(abs(cost_index_drift(world.cost_index)) * 12, 0.0, 0.25)
    outage_dc = _active_pin(world, "dc_outage")
    touches = 1.0 if outage_dc and outage_dc in (shipment.origin, shipment.destination) else 0.0
    return late_probability_score(miles, on_time_adj, fuel_vol, touches, multipliers.planning_friction)


def dc_throughput_risk(inbound: float, outbound: float, effective_capacity: float) -> Tuple[float, float]:
    """Return ``(utilization, risk)``; risk ramps sharply past ~86% utilization."""
    flow = inbound * 0.6 + outbound * 0.4
    utilization = clamp(flow / max(1.0, effective_capacity), 0.0, 1.6)
    risk = clamp(sigmoid(9 * (utilization - 0.86)), 0.0, 0.99)
    return utilization, risk


@dataclass
class RetenderQuote:
    carrier_id: str
    freight: int
    late_prob: float
    penalty: float
    expected_total: int


def _quote(world: World, shipment: Shipment, carrier_id: str, multipliers: Multipliers) -> RetenderQuote:
    miles = shipment_miles(world.baseline, shipment)
    carrier = lookup_carrier(world.baseline, carrier_id)
    freight = freight_cost(miles, carrier)
    lp = late_probability(world, _with_carrier(shipment, carrier_id), multipliers)
    penalty = shipment.penalty or DEFAULT_PENALTY
    return RetenderQuote(
        carrier_id=carrier_id,
        freight=freight,
        late_prob=lp,
        penalty=penalty,
        expected_total=freight + rint(lp * penalty),
    )


def _with_carrier(shipment: Shipment, carrier_id: str) -> Shipment:
    tmp = copy.copy(shipment)
    tmp.carrier = carrier_id
    return tmp


def retender_quotes(world: World, shipment_id: str) -> List[RetenderQuote]:
    """Quote every carrier for ``shipment_id``: freight + late_prob * penalty."""
    _ensure_readable(world)
    shipment = world.find_shipment(shipment_id)
    if shipment is None:
        logger.warning("No shipment %s to quote", shipment_id)
        return []
    m = scenario_multipliers(world)
    return [_quote(world, shipment, c.id, m) for c in world.baseline.carriers]


# ---------------------------------------------------------------------------
# Exception engine
# ---------------------------------------------------------------------------
INVENTORY_RISK = "Inventory Coverage Risk"
SHIPMENT_RISK = "Shipment Late Risk"
DC_CHOKE_RISK = "DC Throughput Choke Risk"

DOC_LOW = 7.0
DOC_HIGH = 21.0


@dataclass
class DcUtilization:
    inbound: int = 0
    outbound: int = 0
    capacity: int = 0
    utilization: float = 0.0
    risk: float = 0.0


@dataclass
class ExceptionRecord:
    id: str
    type: str
    value_at_risk: int
    risk_score: float
    why: str
    dc_id: Optional[str] = None
    sku_id: Optional[str] = None
    shipment_id: Optional[str] = None
    lane: Optional[str] = None
    qty: Optional[int] = None
    doc: Optional[float] = None
    shortage: Optional[int] = None
    late_prob: Optional[float] = None
    utilization: Optional[float] = None

    def to_dict(self) -> Dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class Kpis:
    value_at_risk: int
    service_risk: float
    avg_dc_util: float
    late_shipments: int


@dataclass
class Derived:
    multipliers: Multipliers
    utilization: Dict[str, DcUtilization]
    exceptions: List[ExceptionRecord]
    kpis: Kpis


def dc_utilization(world: World, multipliers: Multipliers) -> Dict[str, DcUtilization]:
    util: Dict[str, DcUtilization] = {}
    for dc in world.baseline.dcs:
        util[dc.id] = DcUtilization(capacity=rint((dc.capacity or 0) * multipliers.dc_cap_mult.get(dc.id, 1.0)))
    for s in world.shipments:
        if s.delivered:
            continue
        if s.destination in util:
            util[s.destination].inbound += s.qty
        if s.kind == "transfer" and s.origin in util:
            util[s.origin].outbound += s.qty
    for u in util.values():
        u.utilization, u.risk = dc_throughput_risk(u.inbound, u.outbound, u.capacity)
    return util


def in_transit_units(world: World, dc_id: str, sku_id: str) -> int:
    return sum(s.qty for s in world.shipments if not s.delivered and s.destination == dc_id and s.sku == sku_id)


def _inventory_why(world: World, dc: Node, sku: Sku, doc: float, shortage: int, dc_risk: float) -> str:
    sc = world.scenario
    bits = [f"DOC is {round_half_up(doc, 1)} days (risk increases below 7)."]
    if shortage > 0:
        bits.append(f"Projected shortage ~{shortage:,} units over 7 days if inbound doesn't land.")
    if dc_risk > 0.5:
        bits.append(f"DC utilization risk is elevated ({rint(dc_risk * 100)}%).")
    if sc.dc_outage and _active_pin(world, "dc_outage") == dc.id:
        bits.append("Scenario: DC outage reduces effective throughput and increases delay risk.")
    if sc.demand_spike and _active_pin(world, "demand_spike") == sku.id:
        bits.append("Scenario: demand spike on this SKU increases burn-rate.")
    if sc.cyber_degraded:
        bits.append("Scenario: cyber degraded mode adds planning friction (higher late/stockout risk).")
    return " ".join(bits)


def _shipment_why(world: World, s: Shipment, lp: float) -> str:
    sc = world.scenario
    bits = [f"Late probability is {round_half_up(lp * 100, 1)}% based on lane miles, carrier on-time, fuel drift, and scenario signals."]
    outage_dc = _active_pin(world, "dc_outage")
    if outage_dc and outage_dc in (s.origin, s.destination):
        bits.append("Touches the outage DC (higher disruption risk).")
    if sc.carrier_disruption and s.carrier == _active_pin(world, "carrier_disruption"):
        bits.append("Carrier is disrupted (lower on-time).")
    if sc.cyber_degraded:
        bits.append("Cyber degraded mode increases handoffs and planning latency.")
    return " ".join(bits)


def derive_kpis_and_exceptions(world: World) -> Derived:
    """Rank every exception by value-at-risk and roll up headline KPIs.

    Nothing is cached: each call reads the current World, so two calls with no
    mutation in between return identical results.
    """

    _ensure_readable(world)
    baseline = world.baseline
    m = scenario_multipliers(world)
    util = dc_utilization(world, m)
    outage_dc = _active_pin(world, "dc_outage")
    spike_sku = _active_pin(world, "demand_spike")

    inv_exceptions: List[ExceptionRecord] = []
    for dc in baseline.dcs:
        for sku in baseline.skus:
            on_hand = world.inventory.get(dc.id, {}).get(sku.id, 0)
            d = max(0.1, m.effective_demand(baseline, dc.id, sku.id))
            doc = on_hand / d
            inbound = in_transit_units(world, dc.id, sku.id)
            shortage = max(0, rint(7 * d - (on_hand + 0.55 * inbound)))
            value_at_risk = rint(shortage * sku.unit_margin * 3.0)
            dc_risk = util[dc.id].risk
            risk_score = clamp(
                0.55 * clamp((DOC_LOW - doc) / DOC_LOW, 0, 1)
                + 0.25 * dc_risk
                + 0.12 * (1 if outage_dc == dc.id else 0)
                + 0.08 * (1 if spike_sku == sku.id else 0),
                0, 1,
            )
            if doc < 10.0 or risk_score > 0.62:
                inv_exceptions.append(ExceptionRecord(
                    id=f"EXC-INV-{dc.id}-{sku.id}",
                    type=INVENTORY_RISK,
                    dc_id=dc.id,
                    sku_id=sku.id,
                    doc=round_half_up(doc, 1),
                    shortage=shortage,
                    value_at_risk=value_at_risk,
                    risk_score=round_half_up(risk_score, 2),
                    why=_inventory_why(world, dc, sku, doc, shortage, dc_risk),
                ))

    ship_exceptions: List[ExceptionRecord] = []
    for s in world.shipments:
        if s.delivered:
            continue
        lp = late_probability(world, s, m)
        if lp > 0.40:
            risk_score = clamp(
                0.55 * lp
                + 0.25 * (0.2 if world.scenario.cyber_degraded else 0)
                + 0.20 * (0.15 if world.scenario.dc_outage else 0),
                0, 1,
            )
            ship_exceptions.append(ExceptionRecord(
                id=f"EXC-SHP-{s.id}",
                type=SHIPMENT_RISK,
                shipment_id=s.id,
                lane=f"{s.origin} → {s.destination}",
                sku_id=s.sku,
                qty=s.qty,
                late_prob=round_half_up(lp, 3),
                value_at_risk=rint(lp * (s.penalty or DEFAULT_PENALTY)),
                risk_score=round_half_up(risk_score, 2),
                why=_shipment_why(world, s, lp),
            ))

    dc_exceptions: List[ExceptionRecord] = []
    for dc in baseline.dcs:
        u = util[dc.id]
        if u.utilization > 0.92 or u.risk > 0.62:
            dc_exceptions.append(ExceptionRecord(
                id=f"EXC-DC-{dc.id}",
                type=DC_CHOKE_RISK,
                dc_id=dc.id,
                utilization=round_half_up(u.utilization, 2),
                value_at_risk=rint(u.risk * 120000),
                risk_score=round_half_up(clamp(u.risk, 0, 1), 2),
                why=(
                    f"Utilization is {rint(u.utilization * 100)}% of effective capacity "
                    f"({u.capacity} units, adjusted by scenario). Risk ramps sharply beyond ~86%."
                ),
            ))

    ranked = sorted(
        inv_exceptions + ship_exceptions + dc_exceptions,
        key=lambda e: (-e.value_at_risk, -e.risk_score),
    )

    total_var = sum(e.value_at_risk for e in ranked)
    kpis = Kpis(
        value_at_risk=total_var,
        service_risk=clamp(sigmoid(total_var / 220000 - 0.6), 0.03, 0.96),
        avg_dc_util=sum(u.utilization for u in util.values()) / max(1, len(util)),
        late_shipments=len(ship_exceptions),
    )
    return Derived(multipliers=m, utilization=util, exceptions=ranked, kpis=kpis)


# ---------------------------------------------------------------------------
# Rebalance optimizer
# ---------------------------------------------------------------------------
MAX_TRANSFER_UNITS = 2200


@dataclass
class TransferProposal:
    sku_id: str
    from_dc_id: str
    to_dc_id: str
    qty: int
    miles: int
    transit_days: int
    benefit: int
    transfer_cost: int
    net_value: int

    def to_action(self) -> "RebalanceTransfer":
        return RebalanceTransfer(
            from_dc_id=self.from_dc_id,
            to_dc_id=self.to_dc_id,
            sku_id=self.sku_id,
            qty=self.qty,
            transit_days=self.transit_days,
            transfer_cost=self.transfer_cost,
            benefit=self.benefit,
        )


def demand_per_day(world: World, dc_id: str, sku_id: str, multipliers: Optional[Multipliers] = None) -> float:
    m = multipliers or scenario_multipliers(world)
    return round_half_up(m.effective_demand(world.baseline, dc_id, sku_id), 1)


def rebalance_proposals(world: World, sku_id: str) -> List[TransferProposal]:
    """Greedy largest-need / largest-excess matching of DC inventory for one SKU.

    A heuristic, not a transportation-problem solver: pairings follow the
    largest-first order only. Proposals with non-positive net value are dropped.
    """

    _ensure_readable(world)
    baseline = world.baseline
    sku = lookup_sku(baseline, sku_id)
    m = scenario_multipliers(world)

    supply: List[Dict] = []
    need: List[Dict] = []
    for dc in baseline.dcs:
        d = demand_per_day(world, dc.id, sku_id, m)
        on_hand = world.inventory.get(dc.id, {}).get(sku_id, 0)
        doc = on_hand / max(0.1, d)
        if doc > DOC_HIGH:
            units = rint((doc - DOC_HIGH) * d)
            if units > 0:
                supply.append({"dc_id": dc.id, "units": units})
        elif doc < DOC_LOW:
            units = rint((DOC_LOW - doc) * d)
            if units > 0:
                need.append({"dc_id": dc.id, "units": units})

    supply.sort(key=lambda r: -r["units"])
    need.sort(key=lambda r: -r["units"])
    if not supply or not need:
        return []

    dc_index = {dc.id: i for i, dc in enumerate(baseline.dcs)}
    miles_mx = distance_matrix(baseline.dcs)

    proposals: List[TransferProposal] = []
    for n in need:
        remaining = n["units"]
        for s in supply:
            if remaining <= 0:
                break
            if s["units"] <= 0:
                continue
            qty = min(remaining, s["units"], MAX_TRANSFER_UNITS)
            mls = float(miles_mx[dc_index[s["dc_id"]], dc_index[n["dc_id"]]])
            td = dc_transit_days(mls)
            benefit = rint(qty * sku.unit_margin * 2.8)
            transfer_cost = rint(qty * (0.06 + mls * 0.00085) + qty * 0.008 * td)
            net_value = benefit - transfer_cost
            if net_value > 0:
                proposals.append(TransferProposal(
                    sku_id=sku_id,
                    from_dc_id=s["dc_id"],
                    to_dc_id=n["dc_id"],
                    qty=qty,
                    miles=rint(mls),
                    transit_days=td,
                    benefit=benefit,
                    transfer_cost=transfer_cost,
                    net_value=net_value,
                ))
            s["units"] -= qty
            remaining -= qty

    proposals.sort(key=lambda p: -p.net_value)
    return proposals


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RebalanceTransfer:
    from_dc_id: str
    to_dc_id: str
    sku_id: str
    qty: int
    transit_days: int
    transfer_cost: float
    benefit: float = 0.0
    type: ClassVar[str] = "REBALANCE_TRANSFER"


@dataclass(frozen=True)
class Retender:
    shipment_id: str
    new_carrier_id: str
    type: ClassVar[str] = "RETENDER"


@dataclass(frozen=True)
class ExpediteInbound:
    dc_id: str
    sku_id: str
    add_qty: int
    type: ClassVar[str] = "EXPEDITE_INBOUND"


@dataclass(frozen=True)
class RerouteOverflow:
    dc_id: str
    type: ClassVar[str] = "REROUTE_OVERFLOW"


@dataclass(frozen=True)
class UnknownAction:
    type: str
    payload: Dict = field(default_factory=dict)


Action = Union[RebalanceTransfer, Retender, ExpediteInbound, RerouteOverflow, UnknownAction]

_ACTION_FIELDS = {
    "REBALANCE_TRANSFER": (RebalanceTransfer, {
        "fromDcId": "from_dc_id", "toDcId": "to_dc_id", "skuId": "sku_id", "qty": "qty",
        "transitDays": "transit_days", "transferCost": "transfer_cost", "benefit": "benefit",
    }),
    "RETENDER": (Retender, {"shipmentId": "shipment_id", "newCarrierId": "new_carrier_id"}),
    "EXPEDITE_INBOUND": (ExpediteInbound, {"dcId": "dc_id", "skuId": "sku_id", "addQty": "add_qty"}),
    "REROUTE_OVERFLOW": (RerouteOverflow, {"dcId": "dc_id"}),
}


def action_from_dict(payload: Dict) -> Action:
    """Parse a ``{"type": ..., ...}`` payload (camelCase or snake_case keys)."""
    kind = str(payload.get("type", ""))
    entry = _ACTION_FIELDS.get(kind)
    if entry is None:
        return UnknownAction(type=kind, payload=dict(payload))
    cls, aliases = entry
    wanted = set(aliases.values())
    kwargs = {}
    for key, val in payload.items():
        name = aliases.get(key, key)
        if name in wanted:
            kwargs[name] = val
    try:
        return cls(**kwargs)
    except TypeError:
        return UnknownAction(type=kind, payload=dict(payload))


def action_to_dict(action: Action) -> Dict:
    if isinstance(action, UnknownAction):
        return {"type": action.type, **action.payload}
    return {"type": action.type, **asdict(action)}


def guardrail(world: World) -> Tuple[bool, str]:
    if world.scenario.cyber_degraded:
        return False, (
            "Cyber degraded mode: execution is restricted. "
            "Use Playbooks to generate a manual plan (simulated guardrail)."
        )
    return True, ""


def best_transfer_carrier(world: World) -> str:
    """Highest on-time carrier, skipping the disrupted one."""
    disrupted = _active_pin(world, "carrier_disruption")
    pool = [c for c in world.baseline.carriers if c.id != disrupted]
    pool.sort(key=lambda c: -c.on_time)
    return (pool[0] if pool else world.baseline.carriers[0]).id


def _new_shipment_id(world: World, prefix: str) -> str:
    return f"SHP-{prefix}-{int(math.floor(world.stream.next() * 1e9))}"


def _apply_rebalance(world: World, action: RebalanceTransfer) -> Optional[AuditLogEntry]:
    if action.qty <= 0:
        logger.debug("Ignoring transfer with qty=%s", action.qty)
        return None
    row = world.inventory.get(action.from_dc_id)
    carrier = best_transfer_carrier(world)
    shipment = Shipment(
        id=_new_shipment_id(world, "XFER"),
        kind="transfer",
        origin=action.from_dc_id,
        destination=action.to_dc_id,
        sku=action.sku_id,
        qty=int(action.qty),
        carrier=carrier,
        created_day=world.day,
        eta_days=int(action.transit_days),
        base_transit_days=int(action.transit_days),
        penalty=TRANSFER_PENALTY,
        status="in_transit",
        miles=max(200, rint(action.transit_days * 520)),
        cost=rint(action.transfer_cost),
    )
    if row is not None and action.sku_id in row:
        row[action.sku_id] = max(0, row[action.sku_id] - int(action.qty))
    else:
        logger.warning("No inventory for %s at %s; transfer source not debited", action.sku_id, action.from_dc_id)
    world.shipments.insert(0, shipment)
    return world.log(
        action.type,
        f"Transferred {int(action.qty):,} units of {action.sku_id} from {action.from_dc_id} → "
        f"{action.to_dc_id} (ETA {action.transit_days}d).",
        {**asdict(action), "shipment_id": shipment.id, "carrier": carrier},
    )


def _apply_retender(world: World, action: Retender) -> Optional[AuditLogEntry]:
    shipment = world.find_shipment(action.shipment_id)
    if shipment is None:
        logger.warning("RETENDER ignored: no shipment %s", action.shipment_id)
        return None
    prev = shipment.carrier
    quote = _quote(world, shipment, action.new_carrier_id, scenario_multipliers(world))
    shipment.carrier = action.new_carrier_id
    shipment.cost = quote.freight
    factor = 1.0 if prev == action.new_carrier_id else 0.92
    shipment.eta_days = int(clamp(rint(shipment.eta_days * factor), 0, 7))
    return world.log(
        action.type,
        f"Re-tendered {shipment.id} from {prev} → {action.new_carrier_id}. "
        f"Expected total cost ~${quote.expected_total:,}.",
        {"shipment_id": shipment.id, "prev": prev, "new_carrier_id": action.new_carrier_id, "quote": asdict(quote)},
    )


def _apply_expedite(world: World, action: ExpediteInbound) -> Optional[AuditLogEntry]:
    if action.add_qty <= 0:
        logger.debug("Ignoring expedite with add_qty=%s", action.add_qty)
        return None
    baseline = world.baseline
    plant = world.stream.choice(baseline.plants).id
    lane = baseline.lane_between(plant, action.dc_id) or lookup_lane(baseline, None)
    carrier = max(baseline.carriers, key=lambda c: c.on_time).id
    shipment = Shipment(
        id=_new_shipment_id(world, "EXP"),
        kind="inbound",
        origin=plant,
        destination=action.dc_id,
        sku=action.sku_id,
        qty=int(action.add_qty),
        carrier=carrier,
        created_day=world.day,
        eta_days=1,
        base_transit_days=lane.transit_days,
        penalty=EXPEDITE_PENALTY,
        status="in_transit",
        lane_id=lane.id,
        cost=rint(lane.miles * EXPEDITE_RATE),
    )
    world.shipments.insert(0, shipment)
    return world.log(
        action.type,
        f"Expedited {int(action.add_qty):,} units of {action.sku_id} to {action.dc_id} (ETA 1d).",
        {**asdict(action), "shipment_id": shipment.id, "origin": plant},
    )


def _apply_overflow(world: World, action: RerouteOverflow) -> Optional[AuditLogEntry]:
    world.overflow_boost[action.dc_id] = RELIEF_DAYS
    return world.log(
        action.type,
        f"Activated overflow plan for {action.dc_id} (temporary throughput relief).",
        asdict(action),
    )


_HANDLERS: Dict[type, Callable[[World, Action], Optional[AuditLogEntry]]] = {
    RebalanceTransfer: _apply_rebalance,
    Retender: _apply_retender,
    ExpediteInbound: _apply_expedite,
    RerouteOverflow: _apply_overflow,
}


def execute_action(world: World, action: Union[Action, Dict]) -> Optional[AuditLogEntry]:
    """Apply ``action`` under the guardrail and return the audit entry it produced.

    Blocked and unknown actions still log one entry; silent no-ops return None.
    """

    if isinstance(action, dict):
        action = action_from_dict(action)
    with _mutation(world):
        ok, reason = guardrail(world)
        if not ok:
            logger.warning("Guardrail blocked %s", action.type)
            return world.log("GUARDRAIL_BLOCK", reason, action_to_dict(action))
        handler = _HANDLERS.get(type(action))
        if handler is None:
            logger.warning("Unknown action type %r", action.type)
            return world.log("UNKNOWN_ACTION", f"Unknown action type: {action.type}", action_to_dict(action))
        entry = handler(world, action)
        if entry is not None:
            logger.info("Executed %s: %s", entry.type, entry.detail)
        return entry


# ---------------------------------------------------------------------------
# Simulation clock
# ---------------------------------------------------------------------------
COST_INDEX_WINDOW = 28


def tick(world: World) -> List[str]:
    """Advance one simulated day; returns the ids delivered on this day."""
    baseline = world.baseline
    with _mutation(world):
        world.day += 1

        for dc_id in list(world.overflow_boost):
            world.overflow_boost[dc_id] = max(0, world.overflow_boost[dc_id] - 1)
            if world.overflow_boost[dc_id] == 0:
                del world.overflow_boost[dc_id]

        m = scenario_multipliers(world)
        for dc in baseline.dcs:
            row = world.inventory.setdefault(dc.id, {})
            for sku in baseline.skus:
                burn = rint(m.effective_demand(baseline, dc.id, sku.id))
                row[sku.id] = max(0, row.get(sku.id, 0) - burn)

        delivered: List[str] = []
        for s in world.shipments:
            if s.delivered:
                continue
            s.eta_days = max(0, s.eta_days - 1)
            if s.eta_days == 0:
                s.status = "delivered"
                dest = world.inventory.get(s.destination)
                if dest is not None and s.sku in dest:
                    dest[s.sku] += s.qty
                delivered.append(s.id)
                world.log(
                    "SHIPMENT_DELIVERED",
                    f"Delivered {s.id} to {s.destination} ({s.qty:,} units of {s.sku}).",
                    {"shipment_id": s.id},
                )

        last = world.cost_index[-1].index
        drift = world.stream.next() * 0.018 - 0.009
        nxt = clamp(last * (1 + drift), 0.85, 1.25)
        world.cost_index.append(CostPoint(day=world.day, index=round_half_up(nxt, 3)))
        if len(world.cost_index) > COST_INDEX_WINDOW:
            world.cost_index.pop(0)

    logger.debug("Day %d: cost index %.3f, %d deliveries", world.day, world.cost_index[-1].index, len(delivered))
    return delivered


__all__ = [
    "DEFAULT_CONFIG",
    "DEFAULT_SEED",
    "deep_merge",
    "validate_config",
    "RandomStream",
    "Node",
    "Lane",
    "Carrier",
    "Sku",
    "CostPoint",
    "Shipment",
    "Baseline",
    "ScenarioState",
    "AuditLogEntry",
    "World",
    "ReentrantMutationError",
    "generate_baseline",
    "Multipliers",
    "toggle_scenario",
    "scenario_multipliers",
    "late_probability",
    "late_probability_score",
    "dc_throughput_risk",
    "RetenderQuote",
    "retender_quotes",
    "ExceptionRecord",
    "Kpis",
    "Derived",
    "derive_kpis_and_exceptions",
    "TransferProposal",
    "rebalance_proposals",
    "RebalanceTransfer",
    "Retender",
    "ExpediteInbound",
    "RerouteOverflow",
    "UnknownAction",
    "Action",
    "action_from_dict",
    "action_to_dict",
    "execute_action",
    "tick",
]
