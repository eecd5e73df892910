import pytest

from alerts.events import EventPublisher


@pytest.mark.asyncio
async def test_named_and_wildcard_subscribers():
    publisher = EventPublisher()
    named, everything = [], []

    async def on_any(event):
        everything.append(event.name)

    publisher.subscribe('alert.triggered', lambda event: named.append(event.payload['alertId']))
    publisher.subscribe('*', on_any)

    await publisher.publish('alert.triggered', {'alertId': 'a-1'})
    await publisher.publish('monitoring.error', {'error': 'x'})

    assert named == ['a-1']
    assert everything == ['alert.triggered', 'monitoring.error']


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others():
    publisher = EventPublisher()
    seen = []

    def broken(event):
        raise RuntimeError("subscriber bug")

    publisher.subscribe('contract.evicted', broken)
    publisher.subscribe('contract.evicted', lambda event: seen.append(event))

    event = await publisher.publish('contract.evicted', {'address': '0x1'})

    assert seen == [event]
    assert event.occurred_at.tzinfo is not None
