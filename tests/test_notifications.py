import asyncio

from bitacora.notifications import PingActions, deliver_in_order, parse_ping_action


def test_ping_action_ids_round_trip() -> None:
    actions = PingActions(42)

    assert parse_ping_action(actions.acknowledge_id) == ("ack", 42)
    assert parse_ping_action(actions.close_id) == ("close", 42)
    assert parse_ping_action("bitacora_start") is None
    assert parse_ping_action("ping_yes:abc") is None


def test_deliver_in_order_stops_at_first_success() -> None:
    calls = []

    def route(name, result):
        async def send():
            calls.append(name)
            if result is None:
                raise RuntimeError("gateway down")
            return result

        return send

    delivered = asyncio.run(deliver_in_order([route("dm", None), route("logs", True), route("extra", True)]))

    assert delivered is True
    assert calls == ["dm", "logs"]


def test_deliver_in_order_reports_failure() -> None:
    async def fail():
        return False

    assert asyncio.run(deliver_in_order([fail, fail])) is False
    assert asyncio.run(deliver_in_order([])) is False
