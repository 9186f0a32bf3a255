"""Logical network interfaces and throughput without double counting bonded members."""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from .models import NetworkRates
from .rates import compute_rate

logger = logging.getLogger(__name__)

ALL_INTERFACES = "All"
COMBINED_INTERFACE = "Combined"

# Loopback and tunnel stub pseudo-interfaces
EXCLUDED_PREFIXES = ("lo", "gif", "stf")


@dataclass(frozen=True)
class RawInterface:
    """One row of the OS interface table."""
    name: str
    bytes_in: int = 0
    bytes_out: int = 0
    is_up: bool = False
    is_running: bool = False

    @property
    def active(self) -> bool:
        return self.is_up and self.is_running


@dataclass(frozen=True)
class BondGroup:
    """A link-aggregation interface and the physical members folded into it."""
    name: str
    members: tuple[str, ...]


@dataclass(frozen=True)
class CounterPair:
    bytes_in: int = 0
    bytes_out: int = 0

    def __add__(self, other: "CounterPair") -> "CounterPair":
        return CounterPair(self.bytes_in + other.bytes_in, self.bytes_out + other.bytes_out)


@dataclass(frozen=True)
class InterfaceCounterState:
    """Last cumulative reading of one countable unit."""
    bytes_in: int
    bytes_out: int
    last_sample_time: float
    # Raw interfaces behind the reading; a different set means the counters are not comparable
    sources: tuple[str, ...] = ()


@dataclass(frozen=True)
class Topology:
    interfaces: dict[str, RawInterface]
    active_bonds: tuple[BondGroup, ...] = ()
    selectable: tuple[str, ...] = ()
    hidden_members: frozenset[str] = field(default_factory=frozenset)

    @property
    def bond_names(self) -> frozenset[str]:
        return frozenset(bond.name for bond in self.active_bonds)


def is_excluded(name: str) -> bool:
    return name.startswith(EXCLUDED_PREFIXES)


def detect_active_bonds(names: Iterable[str], groups: Iterable[BondGroup]) -> tuple[BondGroup, ...]:
    """A bond is active when the group interface and every one of its members are present."""
    present = set(names)
    active = []
    for group in groups:
        if not group.members:
            continue
        if group.name in present and all(member in present for member in group.members):
            active.append(group)
    return tuple(active)


def build_topology(raw: Iterable[RawInterface], groups: Iterable[BondGroup] = ()) -> Topology:
    """Filter the raw table and work out which names a user may select."""
    interfaces = {iface.name: iface for iface in raw if not is_excluded(iface.name)}
    active_bonds = detect_active_bonds(interfaces, groups)
    hidden = frozenset(member for bond in active_bonds for member in bond.members)
    bond_names = {bond.name for bond in active_bonds}

    physical = sorted(
        name for name in interfaces
        if name not in hidden and name not in bond_names
    )
    selectable = [ALL_INTERFACES]
    if sum(1 for iface in interfaces.values() if iface.active) >= 2:
        selectable.append(COMBINED_INTERFACE)
    selectable.extend(sorted(bond_names))
    selectable.extend(physical)

    return Topology(
        interfaces=interfaces,
        active_bonds=active_bonds,
        selectable=tuple(selectable),
        hidden_members=hidden,
    )


def bond_counters(topology: Topology, bond: BondGroup) -> CounterPair:
    """
    Counters for a bonded group.

    The group interface is authoritative for inbound traffic when it reports
    any; outbound is always the sum of the members.
    """
    members = CounterPair()
    for name in bond.members:
        iface = topology.interfaces.get(name)
        if iface is not None:
            members = members + CounterPair(iface.bytes_in, iface.bytes_out)

    group = topology.interfaces.get(bond.name)
    bytes_in = group.bytes_in if group is not None and group.bytes_in > 0 else members.bytes_in
    return CounterPair(bytes_in, members.bytes_out)


@dataclass(frozen=True)
class CountingUnit:
    """A bond as a whole or a standalone interface, with its cumulative counters."""
    name: str
    counters: CounterPair
    sources: tuple[str, ...]
    active: bool


def counting_units(topology: Topology) -> dict[str, CountingUnit]:
    """Each countable unit once: bonds as a whole, their members never on their own."""
    units = {}
    bonds = {bond.name: bond for bond in topology.active_bonds}
    for name, iface in topology.interfaces.items():
        if name in topology.hidden_members:
            continue
        if name in bonds:
            bond = bonds[name]
            units[name] = CountingUnit(name, bond_counters(topology, bond), (name,) + bond.members, iface.active)
        else:
            units[name] = CountingUnit(name, CounterPair(iface.bytes_in, iface.bytes_out), (name,), iface.active)
    return units


def aggregate_members(topology: Topology, units: dict[str, CountingUnit]) -> dict[str, tuple[str, ...]]:
    """Units summed by the "All" and "Combined" selections."""
    groups = {ALL_INTERFACES: tuple(units)}
    if COMBINED_INTERFACE in topology.selectable:
        groups[COMBINED_INTERFACE] = tuple(name for name, unit in units.items() if unit.active)
    return groups


def parse_bond_members(ifconfig_output: str) -> list[str]:
    """Member names from `ifconfig bondN` lines such as 'member: en0 flags=3<LEARNING,SLAVE>'."""
    members = []
    for line in ifconfig_output.splitlines():
        line = line.strip()
        if not line.startswith("member:"):
            continue
        parts = line.split()
        if len(parts) >= 2 and parts[1] not in members:
            members.append(parts[1])
    return members


class NetworkSampler:
    """
    Owns the per-interface counter state and turns successive readings into rates.

    Only the fast cadence calls `sample`; nothing else writes the state.
    """

    def __init__(
        self,
        read_interfaces: Callable[[], list[RawInterface]],
        bond_groups: Iterable[BondGroup] = (),
        read_bond_members: Optional[Callable[[str], list[str]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._read_interfaces = read_interfaces
        self._configured = tuple(bond_groups)
        self._read_bond_members = read_bond_members
        self._clock = clock
        self._discovered: tuple[BondGroup, ...] = ()
        self._raw_names: frozenset[str] = frozenset()
        self._state: dict[str, InterfaceCounterState] = {}
        self._selectable: tuple[str, ...] = ()

    @property
    def interfaces(self) -> tuple[str, ...]:
        return self._selectable

    @property
    def state(self) -> dict[str, InterfaceCounterState]:
        return dict(self._state)

    def _groups(self, names: frozenset[str]) -> tuple[BondGroup, ...]:
        if names != self._raw_names:
            self._raw_names = names
            self._discovered = self._discover_bonds(names)
        return self._configured + self._discovered

    def _discover_bonds(self, names: frozenset[str]) -> tuple[BondGroup, ...]:
        if self._read_bond_members is None:
            return ()
        configured = {group.name for group in self._configured}
        found = []
        for name in sorted(names):
            if not name.startswith("bond") or name in configured:
                continue
            members = [m for m in self._read_bond_members(name) if m in names]
            if members:
                logger.info(f"Discovered bond {name} with members {members}")
                found.append(BondGroup(name=name, members=tuple(members)))
        return tuple(found)

    def _unit_rate(self, unit: CountingUnit, now: float) -> tuple[float, float]:
        previous = self._state.get(unit.name)
        if previous is None or previous.sources != unit.sources:
            return 0.0, 0.0
        return (
            compute_rate(previous.bytes_out, previous.last_sample_time, unit.counters.bytes_out, now),
            compute_rate(previous.bytes_in, previous.last_sample_time, unit.counters.bytes_in, now),
        )

    def sample(self, selected: str = ALL_INTERFACES) -> NetworkRates:
        """
        Read counters, update state and return the rate of the selected interface.

        "All" and "Combined" are sums of per-unit rates, so a unit that appears,
        comes up or leaves between two readings never shows up as a burst or a gap.
        """
        raw = self._read_interfaces()
        now = self._clock()
        names = frozenset(iface.name for iface in raw if not is_excluded(iface.name))
        topology = build_topology(raw, self._groups(names))
        units = counting_units(topology)
        aggregates = aggregate_members(topology, units)

        if topology.selectable != self._selectable:
            logger.info(f"Network interfaces: {', '.join(topology.selectable)}")
            self._selectable = topology.selectable

        if selected in aggregates:
            chosen = aggregates[selected]
        elif selected in units:
            chosen = (selected,)
        else:
            logger.debug(f"Selected interface {selected} not present")
            chosen = ()

        upload = download = 0.0
        for name in chosen:
            unit_upload, unit_download = self._unit_rate(units[name], now)
            upload += unit_upload
            download += unit_download

        # Replacing the mapping drops units discovery no longer reports
        self._state = {
            name: InterfaceCounterState(unit.counters.bytes_in, unit.counters.bytes_out, now, unit.sources)
            for name, unit in units.items()
        }
        return NetworkRates(upload_bytes_per_sec=upload, download_bytes_per_sec=download)
