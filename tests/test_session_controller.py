import asyncio

import pytest

from conftest import FakeClientFactory, make_settings
from relay import qr
from relay.clients.base import ClientEvent
from relay.config import SessionSettings
from relay.errors import AlreadyConnectedError, EncodingError, NotReadyError
from relay.session_controller import SessionController
from relay.state import ConnectionStatus, SessionPhase, SessionState


def _controller(settings, **factory_kwargs):
    factory = FakeClientFactory(**factory_kwargs)
    return SessionController(settings=settings, client_factory=factory), factory


def test_initialize_wipes_session_dir_and_starts_client(settings):
    session_dir = settings.session.session_dir
    session_dir.mkdir(parents=True)
    (session_dir / "creds.json").write_text("{}")

    async def scenario():
        controller, factory = _controller(settings)
        await controller.initialize()
        assert not session_dir.exists()
        assert controller.phase is SessionPhase.INITIALIZING
        assert controller.status() is ConnectionStatus.CONNECTING
        assert factory.latest.initialized
        await controller.stop()

    asyncio.run(scenario())


def test_teardown_errors_do_not_block_reinitialize(settings):
    async def scenario():
        controller, factory = _controller(settings, fail_destroy=True)
        await controller.initialize()
        await controller.initialize()
        assert len(factory.clients) == 2
        assert factory.clients[0].destroyed
        assert factory.clients[1].initialized
        assert controller.phase is SessionPhase.INITIALIZING
        await controller.stop()

    asyncio.run(scenario())


def test_initialize_failure_disconnects_and_schedules_rebuild(tmp_path):
    settings = make_settings(
        tmp_path, session=SessionSettings(session_dir=tmp_path / "session", reinit_delay_seconds=60)
    )

    async def scenario():
        controller, factory = _controller(settings, fail_init=True)
        await controller.initialize()
        assert controller.phase is SessionPhase.DISCONNECTED
        assert controller._reinit_task is not None
        assert not controller._reinit_task.done()
        await controller.stop()
        assert len(factory.clients) == 1

    asyncio.run(scenario())


def test_challenge_then_disconnect_clears_cache_and_rebuilds_once(settings):
    async def scenario():
        controller, factory = _controller(settings)
        await controller.initialize()
        first = factory.latest

        await first.emit(ClientEvent.QR, "2@abc")
        assert controller.phase is SessionPhase.AWAITING_CHALLENGE
        assert controller.status() is ConnectionStatus.QR_CODE_NEEDED
        assert (await controller.get_qr_code()).raw == "2@abc"

        await first.emit(ClientEvent.DISCONNECTED, "NAVIGATION")
        assert controller.phase is SessionPhase.DISCONNECTED
        assert controller.state.raw_challenge is None
        assert controller.state.encoded_challenge is None
        with pytest.raises(EncodingError):
            await controller.get_qr_code()

        pending = controller._reinit_task
        await first.emit(ClientEvent.DISCONNECTED, "NAVIGATION")
        await first.emit(ClientEvent.AUTH_FAILURE, "late")
        assert controller._reinit_task is pending

        await pending
        assert len(factory.clients) == 2
        assert first.destroyed
        assert controller.phase is SessionPhase.INITIALIZING
        await controller.stop()

    asyncio.run(scenario())


def test_events_from_previous_generation_are_ignored(settings):
    async def scenario():
        controller, factory = _controller(settings)
        await controller.initialize()
        await controller.initialize()
        stale, current = factory.clients

        await stale.emit(ClientEvent.READY)
        assert controller.phase is SessionPhase.INITIALIZING

        await current.emit(ClientEvent.READY)
        assert controller.phase is SessionPhase.READY
        await controller.stop()

    asyncio.run(scenario())


def test_ready_clears_challenge_and_refuses_qr(settings):
    async def scenario():
        controller, factory = _controller(settings)
        await controller.initialize()
        await factory.latest.emit(ClientEvent.QR, "2@abc")
        await factory.latest.emit(ClientEvent.READY)

        assert controller.is_ready()
        assert controller.state.raw_challenge is None
        assert controller.status() is ConnectionStatus.CONNECTED
        with pytest.raises(AlreadyConnectedError):
            await controller.get_qr_code()

        sent = await controller.send_message("5511999990001@c.us", "hello")
        assert sent.chat_id == "5511999990001@c.us"
        assert factory.latest.sent == [("5511999990001@c.us", "hello")]
        await controller.stop()

    asyncio.run(scenario())


def test_challenge_while_ready_tears_session_down(settings):
    async def scenario():
        controller, factory = _controller(settings)
        await controller.initialize()
        await factory.latest.emit(ClientEvent.READY)
        await factory.latest.emit(ClientEvent.QR, "2@new")

        assert controller.phase is SessionPhase.DISCONNECTED
        assert controller.state.raw_challenge is None
        assert controller._reinit_task is not None
        await controller.stop()

    asyncio.run(scenario())


def test_auth_failure_before_ready_schedules_rebuild(settings):
    async def scenario():
        controller, factory = _controller(settings)
        await controller.initialize()
        await factory.latest.emit(ClientEvent.QR, "2@abc")
        await factory.latest.emit(ClientEvent.AUTH_FAILURE, "bad creds")

        assert controller.phase is SessionPhase.AUTH_FAILED
        assert controller._reinit_task is not None
        await controller._reinit_task
        assert len(factory.clients) == 2
        await controller.stop()

    asyncio.run(scenario())


def test_empty_challenge_is_ignored(settings):
    async def scenario():
        controller, factory = _controller(settings)
        await controller.initialize()
        await factory.latest.emit(ClientEvent.QR, "")
        assert controller.phase is SessionPhase.INITIALIZING
        await controller.stop()

    asyncio.run(scenario())


def test_ui_subscribers_receive_snapshot_then_changes(settings):
    async def scenario():
        controller, factory = _controller(settings)
        events = controller.register_ui()
        snapshot = events.get_nowait()
        assert snapshot.type == "state"
        assert snapshot.phase is SessionPhase.INITIALIZING

        await controller.initialize()
        await factory.latest.emit(ClientEvent.QR, "2@abc")

        phases = []
        while not events.empty():
            phases.append(events.get_nowait())
        assert phases[-1].phase is SessionPhase.AWAITING_CHALLENGE
        assert phases[-1].data["qr_available"] is True

        controller.unregister_ui(events)
        await factory.latest.emit(ClientEvent.READY)
        assert events.empty()
        await controller.stop()

    asyncio.run(scenario())


def test_stop_prevents_further_rebuilds(settings):
    async def scenario():
        controller, factory = _controller(settings)
        await controller.initialize()
        client = factory.latest
        await controller.stop()

        assert client.destroyed
        assert controller.phase is SessionPhase.DISCONNECTED
        with pytest.raises(NotReadyError):
            await controller.send_message("1@c.us", "hi")

        await client.emit(ClientEvent.DISCONNECTED, "LOGOUT")
        await controller.initialize()
        assert len(factory.clients) == 1
        assert controller._reinit_task is None

    asyncio.run(scenario())


def test_qr_render_does_not_overwrite_newer_challenge(settings, monkeypatch):
    async def scenario():
        controller, factory = _controller(settings)
        await controller.initialize()
        await factory.latest.emit(ClientEvent.QR, "2@old")
        newer = SessionState(phase=SessionPhase.AWAITING_CHALLENGE, raw_challenge="2@new")

        def render_while_challenge_rotates(raw):
            controller._state = newer
            return "data:image/png;base64,T0xE"

        monkeypatch.setattr(qr, "render_data_url", render_while_challenge_rotates)
        encoded = await controller.get_qr_code()

        assert encoded.raw == "2@old"
        assert encoded.encoded == "T0xE"
        assert controller.state is newer
        assert controller.state.encoded_challenge is None
        await controller.stop()

    asyncio.run(scenario())


def test_qr_render_is_memoized_when_state_is_unchanged(settings, monkeypatch):
    calls = []

    def counting_render(raw):
        calls.append(raw)
        return "data:image/png;base64,QUJD"

    async def scenario():
        controller, factory = _controller(settings)
        await controller.initialize()
        await factory.latest.emit(ClientEvent.QR, "2@abc")
        monkeypatch.setattr(qr, "render_data_url", counting_render)

        first = await controller.get_qr_code()
        second = await controller.get_qr_code()

        assert first == second
        assert calls == ["2@abc"]
        assert controller.state.encoded_challenge == "data:image/png;base64,QUJD"
        await controller.stop()

    asyncio.run(scenario())
