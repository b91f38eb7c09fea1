from __future__ import annotations

from racetimer.transponder.frames import RequestCode
from racetimer.transponder.link import open_link
from racetimer.transponder.config import SerialSettings
from racetimer.transponder.simulator import SimulatedLink


def test_simulated_samples_are_in_range_and_paced() -> None:
    pauses: list[float] = []
    link = SimulatedLink(seed=1, sleep=pauses.append)
    samples = [link.read_sample() for _ in range(50)]
    assert all(50 <= sample.rssi < 100 for sample in samples)
    assert all(1.0 <= pause <= 5.0 for pause in pauses)
    assert [sample.lap_id for sample in samples[:3]] == [1, 2, 3]


def test_simulator_is_seeded() -> None:
    first = SimulatedLink(seed=42, sleep=lambda _: None)
    second = SimulatedLink(seed=42, sleep=lambda _: None)
    assert [first.read_sample().rssi for _ in range(10)] == [second.read_sample().rssi for _ in range(10)]


def test_simulator_identifies() -> None:
    link = SimulatedLink(seed=0, sleep=lambda _: None, firmware_version=4)
    info = link.identify()
    assert info.firmware_version == 4
    assert info.clock_ms >= 0
    assert len(link.request(RequestCode.CLOCK)) == 256


def test_open_link_simulated() -> None:
    link = open_link(SerialSettings(port="/dev/null"), simulate=True, seed=3)
    assert isinstance(link, SimulatedLink)
