import sys

sys.path.insert(0, '.')

import main
from tests.fakes import FakeBroker, FakePool, RecordingNotifier, seed_ladder_store


def test_console_entry_sets_up_logging_and_runs_engine(monkeypatch):
    calls = []

    class RecordingEngine:
        async def start(self):
            calls.append("start")

        async def stop(self):
            calls.append("stop")

    monkeypatch.setattr(main, "TradingEngine", RecordingEngine)
    monkeypatch.setattr(main, "setup_logging", lambda: calls.append("logging"))

    assert main.run() is None
    assert calls == ["logging", "start"]


def test_engine_wires_lifecycle_to_shared_index():
    engine = main.TradingEngine(
        store=seed_ladder_store(),
        pool=FakePool(FakeBroker({"BTCUSDT": 100.0})),
        notifier=RecordingNotifier(),
    )
    assert engine.lifecycle.index is engine.index
    assert engine.lifecycle.scheduler is engine.scheduler
    assert engine.reconciler.index is engine.index
    assert engine.running is False
