import asyncio
import pytest
from knowflow.core.exceptions import InvalidStateTransition
from knowflow.engine.control import ExecutionControl, ensure_transition
from knowflow.schemas.execution import ExecutionStatus
from knowflow.services.cancel_registry import InMemoryCancelRegistry, RegistryExecutionControl

@pytest.mark.parametrize(
    "current, target",
    [
        (ExecutionStatus.PENDING, ExecutionStatus.RUNNING),
        (ExecutionStatus.PENDING, ExecutionStatus.CANCELLED),
        (ExecutionStatus.RUNNING, ExecutionStatus.PAUSED),
        (ExecutionStatus.PAUSED, ExecutionStatus.RUNNING),
        (ExecutionStatus.RUNNING, ExecutionStatus.COMPLETED),
        (ExecutionStatus.RUNNING, ExecutionStatus.FAILED),
        (ExecutionStatus.PAUSED, ExecutionStatus.CANCELLED),
    ],
)
def test_allowed_transitions(current, target):
    ensure_transition(current, target)

@pytest.mark.parametrize(
    "current, target",
    [
        (ExecutionStatus.COMPLETED, ExecutionStatus.RUNNING),
        (ExecutionStatus.FAILED, ExecutionStatus.CANCELLED),
        (ExecutionStatus.CANCELLED, ExecutionStatus.RUNNING),
        (ExecutionStatus.PENDING, ExecutionStatus.COMPLETED),
        (ExecutionStatus.PENDING, ExecutionStatus.PAUSED),
        (ExecutionStatus.PAUSED, ExecutionStatus.COMPLETED),
    ],
)
def test_rejected_transitions(current, target):
    with pytest.raises(InvalidStateTransition):
        ensure_transition(current, target)

def test_cancel_notifies_listeners_once():
    control = ExecutionControl()
    reasons = []
    control.add_cancel_listener(reasons.append)

    control.cancel("stop it")
    control.cancel("again")

    assert control.cancelled
    assert control.cancel_reason == "stop it"
    assert reasons == ["stop it"]

@pytest.mark.asyncio
async def test_wait_until_resumed():
    control = ExecutionControl()
    control.pause()
    assert control.paused

    waiter = asyncio.create_task(control.wait_until_resumed())
    await asyncio.sleep(0.01)
    assert not waiter.done()

    control.resume()
    await asyncio.wait_for(waiter, timeout=1)

@pytest.mark.asyncio
async def test_cancel_releases_paused_waiter():
    control = ExecutionControl()
    control.pause()
    waiter = asyncio.create_task(control.wait_until_resumed())
    await asyncio.sleep(0.01)
    control.cancel()
    await asyncio.wait_for(waiter, timeout=1)

@pytest.mark.asyncio
async def test_registry_control_reads_flags():
    registry = InMemoryCancelRegistry()
    control = RegistryExecutionControl(registry, "exec-1")

    await control.refresh()
    assert not control.paused and not control.cancelled

    await registry.set_paused("exec-1", True)
    await control.refresh()
    assert control.paused

    await registry.set_paused("exec-1", False)
    await control.refresh()
    assert not control.paused

    await registry.request_cancel("exec-1", "user abort")
    await control.refresh()
    assert control.cancelled
    assert control.cancel_reason == "user abort"

    await registry.clear("exec-1")
    assert await registry.get("exec-1") is None
