"""
tests/test_maintenance_task.py -- The background sweep and its shutdown.

The sweep runs in a worker thread, which task.cancel() cannot interrupt.
Shutdown must wait for a running sweep before the engine is disposed.
"""

from __future__ import annotations

import asyncio
import threading
import time
from types import SimpleNamespace
from unittest.mock import MagicMock

from api.main import maintenance_loop, stop_maintenance


def _app_with_sweep(sweep) -> SimpleNamespace:
    service = MagicMock()
    service.run_maintenance.side_effect = sweep
    return SimpleNamespace(state=SimpleNamespace(auth_service=service))


class TestStopMaintenance:
    def test_waits_for_running_sweep(self) -> None:
        started = threading.Event()
        finished: list[bool] = []

        def slow_sweep() -> None:
            started.set()
            time.sleep(0.2)
            finished.append(True)

        app = _app_with_sweep(slow_sweep)

        async def scenario() -> asyncio.Task:
            app.state.maintenance_task = asyncio.create_task(maintenance_loop(app, 0))
            while not started.is_set():
                await asyncio.sleep(0.01)
            await stop_maintenance(app)
            assert finished == [True]
            return app.state.maintenance_task

        task = asyncio.run(scenario())
        assert task.cancelled()

    def test_idle_task_stops_immediately(self) -> None:
        app = _app_with_sweep(lambda: None)

        async def scenario() -> asyncio.Task:
            app.state.maintenance_task = asyncio.create_task(maintenance_loop(app, 24))
            await asyncio.sleep(0)
            await stop_maintenance(app)
            return app.state.maintenance_task

        assert asyncio.run(scenario()).done()
        app.state.auth_service.run_maintenance.assert_not_called()

    def test_failed_sweep_is_logged_and_loop_continues(self, caplog) -> None:
        calls: list[int] = []

        def flaky_sweep() -> None:
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("database unavailable")

        app = _app_with_sweep(flaky_sweep)

        async def scenario() -> None:
            app.state.maintenance_task = asyncio.create_task(maintenance_loop(app, 0))
            while len(calls) < 2:
                await asyncio.sleep(0.01)
            await stop_maintenance(app)

        asyncio.run(scenario())
        assert "Maintenance sweep failed" in caplog.text
