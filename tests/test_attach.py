"""Tests for browser_netcap.attach."""

from __future__ import annotations

import asyncio

import pytest
from fakes import wait_until

from browser_netcap.attach import TabAttachmentManager
from browser_netcap.cdp import EventKind, ProtocolEvent
from browser_netcap.config import CaptureConfig
from browser_netcap.errors import CDPError
from browser_netcap.registry import SessionRegistry


def target(target_id: str, type_: str = "page", url: str = "https://example.com/") -> dict:
    return {"targetId": target_id, "type": type_, "url": url, "title": "Example"}


def attached(session_id: str, info: dict, waiting: bool = False) -> ProtocolEvent:
    return ProtocolEvent(
        EventKind.ATTACHED_TO_TARGET,
        {"sessionId": session_id, "targetInfo": info, "waitingForDebugger": waiting},
    )


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def detached_tabs():
    return []


@pytest.fixture
def manager(fake_cdp, registry, detached_tabs):
    fake_cdp.responses["Target.attachToTarget"] = lambda params, sid: {
        "sessionId": f"S-{params['targetId']}"
    }
    capture = CaptureConfig(max_total_buffer_size=1000, max_resource_buffer_size=100)
    return TabAttachmentManager(fake_cdp, registry, capture, on_detach=detached_tabs.append)


# ---------------------------------------------------------------------------
# start / discovery
# ---------------------------------------------------------------------------


class TestStart:
    async def test_start_enables_discovery_and_auto_attach(self, manager, fake_cdp):
        await manager.start()
        assert fake_cdp.calls[0] == ("Target.setDiscoverTargets", {"discover": True}, None)
        assert fake_cdp.calls[1] == (
            "Target.setAutoAttach",
            {"autoAttach": True, "waitForDebuggerOnStart": True, "flatten": True},
            None,
        )


class TestDiscovery:
    async def test_attaches_only_page_targets(self, manager, fake_cdp, registry):
        fake_cdp.responses["Target.getTargets"] = {
            "targetInfos": [target("T1"), target("W1", "service_worker"), target("T2")]
        }

        assert await manager.discover_and_attach_all() == 2

        assert registry.resolve("S-T1") == "T1"
        assert registry.resolve("S-T2") == "T2"
        assert not registry.has_tab("W1")
        enable = fake_cdp.calls_for("Network.enable")
        assert {c[2] for c in enable} == {"S-T1", "S-T2"}
        assert enable[0][1] == {"maxTotalBufferSize": 1000, "maxResourceBufferSize": 100}

    async def test_second_sweep_attaches_nothing_new(self, manager, fake_cdp):
        fake_cdp.responses["Target.getTargets"] = {"targetInfos": [target("T1")]}
        await manager.discover_and_attach_all()
        assert await manager.discover_and_attach_all() == 0
        assert len(fake_cdp.calls_for("Target.attachToTarget")) == 1

    async def test_attach_failure_is_not_fatal_and_retried(self, manager, fake_cdp, registry):
        fake_cdp.responses["Target.getTargets"] = {"targetInfos": [target("T1")]}
        fake_cdp.errors["Target.attachToTarget"] = CDPError(
            "Target.attachToTarget", "No target with given id found", -32602
        )
        assert await manager.discover_and_attach_all() == 0
        assert not registry.has_tab("T1")

        del fake_cdp.errors["Target.attachToTarget"]
        assert await manager.discover_and_attach_all() == 1

    async def test_enable_failure_unbinds_and_detaches(self, manager, fake_cdp, registry):
        fake_cdp.errors["Network.enable"] = CDPError("Network.enable", "Target closed")
        assert await manager.attach(target("T1")) is False
        assert not registry.has_tab("T1")
        assert ("Target.detachFromTarget", {"sessionId": "S-T1"}, None) in fake_cdp.calls

    async def test_finished_setup_is_forgotten(self, manager, registry):
        assert await manager.attach(target("T1")) is True
        await wait_until(lambda: not manager._setup_tasks)
        assert registry.session_for_tab("T1") == "S-T1"


# ---------------------------------------------------------------------------
# Target events
# ---------------------------------------------------------------------------


class TestAttachedEvents:
    async def test_paused_tab_is_resumed_after_network_enable(self, manager, fake_cdp, registry):
        await manager.handle(attached("S9", target("T9"), waiting=True))
        assert registry.resolve("S9") == "T9"

        await wait_until(lambda: "Runtime.runIfWaitingForDebugger" in fake_cdp.methods())
        methods = fake_cdp.methods()
        assert methods.index("Network.enable") < methods.index("Runtime.runIfWaitingForDebugger")
        assert fake_cdp.calls_for("Runtime.runIfWaitingForDebugger")[0][2] == "S9"

    async def test_unpaused_tab_is_not_resumed(self, manager, fake_cdp):
        await manager.handle(attached("S9", target("T9"), waiting=False))
        await wait_until(lambda: "Network.enable" in fake_cdp.methods())
        assert "Runtime.runIfWaitingForDebugger" not in fake_cdp.methods()

    async def test_non_page_target_is_resumed_and_released(self, manager, fake_cdp, registry):
        await manager.handle(attached("SW", target("W1", "service_worker"), waiting=True))
        await wait_until(lambda: "Target.detachFromTarget" in fake_cdp.methods())
        assert not registry.has_tab("W1")
        assert fake_cdp.methods() == ["Runtime.runIfWaitingForDebugger", "Target.detachFromTarget"]

    async def test_duplicate_session_for_bound_tab_is_released(self, manager, fake_cdp, registry):
        await manager.handle(attached("S1", target("T1")))
        await manager.handle(attached("S2", target("T1")))
        await wait_until(lambda: "Target.detachFromTarget" in fake_cdp.methods())
        assert registry.session_for_tab("T1") == "S1"
        assert ("Target.detachFromTarget", {"sessionId": "S2"}, None) in fake_cdp.calls

    async def test_target_created_attaches_new_tab(self, manager, fake_cdp, registry):
        event = ProtocolEvent(EventKind.TARGET_CREATED, {"targetInfo": target("T5")})
        await manager.handle(event)
        assert await wait_until(lambda: registry.has_tab("T5"))
        assert registry.resolve("S-T5") == "T5"

    async def test_target_created_for_bound_tab_is_ignored(self, manager, fake_cdp):
        await manager.handle(attached("S5", target("T5")))
        await manager.handle(ProtocolEvent(EventKind.TARGET_CREATED, {"targetInfo": target("T5")}))
        await manager.close()
        assert fake_cdp.calls_for("Target.attachToTarget") == []


class TestTeardownEvents:
    async def test_detached_unbinds_and_notifies(self, manager, registry, detached_tabs):
        await manager.handle(attached("S1", target("T1")))
        await manager.handle(
            ProtocolEvent(EventKind.DETACHED_FROM_TARGET, {"sessionId": "S1", "targetId": "T1"})
        )
        assert not registry.has_tab("T1")
        assert detached_tabs == ["T1"]

    async def test_destroyed_unbinds_and_notifies(self, manager, registry, detached_tabs):
        await manager.handle(attached("S1", target("T1")))
        await manager.handle(ProtocolEvent(EventKind.TARGET_DESTROYED, {"targetId": "T1"}))
        assert registry.resolve("S1") is None
        assert detached_tabs == ["T1"]

    async def test_detach_before_enable_completes_skips_resume(self, manager, fake_cdp, registry):
        async def slow_enable():
            await asyncio.sleep(0.05)
            return {}

        fake_cdp.responses["Network.enable"] = lambda params, sid: slow_enable()
        await manager.handle(attached("S1", target("T1"), waiting=True))
        await manager.handle(ProtocolEvent(EventKind.DETACHED_FROM_TARGET, {"sessionId": "S1"}))
        await manager.close()
        assert "Runtime.runIfWaitingForDebugger" not in fake_cdp.methods()

    async def test_reattach_after_detach(self, manager, registry):
        await manager.handle(attached("S1", target("T1")))
        await manager.handle(ProtocolEvent(EventKind.DETACHED_FROM_TARGET, {"sessionId": "S1"}))
        await manager.handle(attached("S2", target("T1")))
        assert registry.resolve("S2") == "T1"

    async def test_target_info_changed_updates_binding(self, manager, registry):
        await manager.handle(attached("S1", target("T1")))
        await manager.handle(
            ProtocolEvent(
                EventKind.TARGET_INFO_CHANGED,
                {"targetInfo": {"targetId": "T1", "url": "https://new/", "title": "New"}},
            )
        )
        [binding] = registry.bindings()
        assert binding.url == "https://new/"
        assert binding.title == "New"
