import json
import threading

import pytest
import requests

from client_session import ClientSession, HttpTransport, IdentityCache, SessionState, sniff_image_mime
from errors import NotFound, UpstreamError, ValidationError

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


class FakeTransport:
    def __init__(self):
        self.generated = []
        self.history = []
        self.reply = {"response": "Hi!", "done": True, "history_saved": True}
        self.error = None
        self.on_generate = None
        self.cleared = 0

    def login(self, name):
        return {"id": 1, "name": name, "created_at": "2026-01-01T00:00:00"}

    def conversations(self, name):
        return self.history

    def clear(self, name):
        self.cleared += 1
        return 4

    def models(self):
        return [{"name": "llava:7b"}, {"name": "llama3:8b"}]

    def health(self):
        return {"status": "healthy"}

    def generate(self, payload):
        self.generated.append(payload)
        if self.on_generate:
            self.on_generate()
        if self.error:
            raise self.error
        return self.reply


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def cache(tmp_path):
    return IdentityCache(tmp_path / "identity.json")


@pytest.fixture
def session(transport, registry, cache):
    return ClientSession(transport, registry, identity_cache=cache)


@pytest.fixture
def png(tmp_path):
    path = tmp_path / "cat.png"
    path.write_bytes(PNG_BYTES)
    return path


def test_starts_logged_out(session):
    assert session.state is SessionState.LOGGED_OUT
    assert not session.can_send


def test_login_resets_model_and_caches_identity(session, cache):
    session.select_model("llava")
    user = session.login(" alice ")

    assert user.name == "alice"
    assert session.selected_model is None
    assert session.state is SessionState.IDLE
    assert cache.load() == "alice"
    assert session.available_models == ["llava:7b", "llama3:8b"]


def test_login_rehydrates_history_in_order(session, transport):
    transport.history = [
        {"prompt": "second", "response": "2", "model": "llava", "image_data": "iVBORw0KGgo=", "timestamp": "t2"},
        {"prompt": "first", "response": "1", "model": "llama3", "image_data": None, "timestamp": "t1"},
    ]
    session.login("alice")

    contents = [(m.role, m.content) for m in session.message_history]
    assert contents == [("user", "first"), ("assistant", "1"), ("user", "second"), ("assistant", "2")]
    assert session.message_history[2].image_url == "data:image/png;base64,iVBORw0KGgo="
    assert transport.generated == []


def test_login_rejects_empty_name(session):
    with pytest.raises(ValidationError):
        session.login("   ")


def test_restore_from_cache(transport, registry, cache):
    cache.save("bob")
    restored = ClientSession(transport, registry, identity_cache=cache).restore()
    assert restored.name == "bob"


def test_logout_clears_everything(session, cache):
    session.login("alice")
    session.select_model("llama3")
    session.set_text("draft")
    session.logout()

    assert session.state is SessionState.LOGGED_OUT
    assert session.selected_model is None
    assert session.input_text == ""
    assert session.message_history == []
    assert cache.load() is None


def test_attach_rejected_without_model(session, png):
    session.login("alice")

    assert session.attach_image(png) is False
    assert session.attached_image is None
    assert session.state is SessionState.IDLE
    assert "select a model" in session.notices[-1]


def test_attach_rejected_for_text_only_model(session, png):
    session.select_model("llama3:8b")
    assert session.attach_image(png) is False
    assert session.attached_image is None


def test_attach_rejects_non_image(session, tmp_path):
    doc = tmp_path / "notes.txt"
    doc.write_text("hello")
    session.select_model("llava:7b")
    assert session.attach_image(doc) is False


def test_attach_rejects_large_file(transport, registry, png):
    small = ClientSession(transport, registry, max_image_bytes=16)
    small.select_model("llava:7b")
    assert small.attach_image(png) is False
    assert "too large" in small.notices[-1]


def test_attach_rejects_unreadable_file(session, tmp_path):
    session.select_model("llava:7b")
    assert session.attach_image(tmp_path / "missing.png") is False
    assert "Failed to read image" in session.notices[-1]


def test_attach_success_builds_data_url(session, png):
    session.select_model("LLaVA:7b")
    assert session.attach_image(png) is True

    image = session.attached_image
    assert image.mime_type == "image/png"
    assert image.data_url.startswith("data:image/png;base64,iVBOR")


def test_switching_to_text_model_drops_image(session, png):
    session.select_model("llava:7b")
    session.attach_image(png)

    assert session.select_model("llama3:8b") is False
    assert session.attached_image is None
    assert "does not support images" in session.notices[-1]


def test_send_requires_login_model_and_content(session, transport):
    assert session.send() is None

    session.login("alice")
    session.set_text("hello")
    assert session.send() is None

    session.select_model("llama3")
    session.set_text("   ")
    assert session.send() is None
    assert transport.generated == []


def test_send_success(session, transport):
    session.login("alice")
    session.select_model("llama3")
    session.set_options(temperature=0.2, top_p=0.5, num_predict=64)
    session.set_text(" hello ")
    assert session.state is SessionState.COMPOSING

    reply = session.send()

    assert reply.role == "assistant"
    assert reply.content == "Hi!"
    assert [m.role for m in session.message_history] == ["user", "assistant"]
    assert session.message_history[0].content == "hello"
    assert session.input_text == ""
    assert session.state is SessionState.IDLE
    assert transport.generated[0] == {
        "model": "llama3",
        "prompt": "hello",
        "userName": "alice",
        "images": [],
        "options": {"temperature": 0.2, "top_p": 0.5, "num_predict": 64},
    }


def test_send_is_blocked_while_generating(session, transport):
    session.login("alice")
    session.select_model("llama3")
    nested = []

    def try_again():
        assert session.state is SessionState.SENDING
        session.set_text("again")
        nested.append(session.send())

    transport.on_generate = try_again
    session.set_text("first")
    session.send()

    assert nested == [None]
    assert len(transport.generated) == 1


def test_send_error_renders_one_system_message(session, transport, png):
    session.login("alice")
    session.select_model("llava:7b")
    session.attach_image(png)
    session.set_text("what is this?")
    transport.error = UpstreamError("Failed to generate response")

    reply = session.send()

    assert reply.role == "system"
    assert reply.content == "Error: Failed to generate response"
    assert [m.role for m in session.message_history] == ["user", "system"]
    assert session.message_history[0].image_url.startswith("data:image/png")
    assert session.attached_image is None
    assert not session.is_generating


def test_network_error_is_rendered(session, transport):
    session.login("alice")
    session.select_model("llama3")
    session.set_text("hi")
    transport.error = requests.ConnectionError("connection refused")

    assert session.send().role == "system"
    assert session.state is SessionState.IDLE


def test_image_only_send(session, transport, png):
    session.login("alice")
    session.select_model("llava:7b")
    session.attach_image(png)

    assert session.can_send
    session.send()

    sent = transport.generated[0]
    assert sent["prompt"] == ""
    assert sent["images"] == [session.message_history[0].image_url.split(",", 1)[1]]
    assert session.attached_image is None


def test_image_is_kept_until_request_settles(session, transport, png):
    session.login("alice")
    session.select_model("llava:7b")
    session.attach_image(png)
    seen = []
    transport.on_generate = lambda: seen.append(session.attached_image is not None)

    session.send()
    assert seen == [True]


def test_reply_after_logout_is_discarded(session, transport):
    session.login("alice")
    session.select_model("llama3")
    session.set_text("hi")
    transport.on_generate = session.logout

    assert session.send() is None
    assert session.message_history == []
    assert session.state is SessionState.LOGGED_OUT


class HookedLock:
    """Lock that runs a callback right after the next release once armed"""

    def __init__(self):
        self._lock = threading.Lock()
        self.armed = False
        self.after_release = None

    def __enter__(self):
        self._lock.acquire()
        return self

    def __exit__(self, *exc):
        self._lock.release()
        if self.armed:
            self.armed = False
            self.after_release()
        return False


def test_relogin_after_reply_settles_never_sees_old_reply(session, transport):
    lock = HookedLock()
    session._lock = lock
    session.login("alice")
    session.select_model("llama3")
    session.set_text("hi")

    def switch_user():
        session.logout()
        session.login("bob")

    lock.after_release = switch_user
    transport.on_generate = lambda: setattr(lock, "armed", True)

    session.send()

    assert session.identity.name == "bob"
    assert [(m.role, m.content) for m in session.message_history] == []
    assert not session.is_generating


def test_recent_prompts_are_distinct_and_capped(session):
    session.login("alice")
    session.select_model("llama3")
    for prompt in ["a", "b", "a"] + [f"p{i}" for i in range(10)]:
        session.set_text(prompt)
        session.send()

    assert len(session.recent_prompts) == 10
    assert session.recent_prompts[0] == "p9"
    assert session.recent_prompts.count("a") <= 1


def test_recent_prompts_move_duplicate_to_front(session):
    session.login("alice")
    session.select_model("llama3")
    for prompt in ["a", "b", "a"]:
        session.set_text(prompt)
        session.send()
    assert session.recent_prompts == ["a", "b"]


def test_history_saved_warning_becomes_notice(session, transport):
    transport.reply = {"response": "ok", "history_saved": False, "warning": "history not saved"}
    session.login("alice")
    session.select_model("llama3")
    session.set_text("hi")
    session.send()
    assert session.notices[-1] == "history not saved"
    assert session.message_history[-1].role == "assistant"


def test_export_is_local(session, transport, tmp_path):
    session.login("alice")
    session.select_model("llama3")
    session.set_text("hello")
    session.send()

    doc = json.loads(session.export("json"))
    assert doc["user"] == "alice"
    assert [m["role"] for m in doc["messages"]] == ["user", "assistant"]
    assert "## Assistant (llama3)" in session.export("md")
    assert len(transport.generated) == 1

    path = session.export_to_file(tmp_path / "exports", "md")
    assert path.read_text(encoding="utf-8").startswith("# Conversation with alice")


def test_clear_chat_and_server_history(session, transport):
    session.login("alice")
    session.select_model("llama3")
    session.set_text("hello")
    session.send()

    session.clear_chat()
    assert session.message_history == []
    assert session.clear_server_history() == 4
    assert transport.cleared == 1


def test_check_connection(session):
    assert session.check_connection() is True


def test_sniff_image_mime():
    assert sniff_image_mime("/9j/4AAQ") == "image/jpeg"
    assert sniff_image_mime("R0lGODlh") == "image/gif"
    assert sniff_image_mime("unknown") == "image/png"


class StubHttpResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self.ok = status_code < 400
        self._body = body

    def json(self):
        return self._body


class StubHttpSession:
    def __init__(self, response):
        self.response = response
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        return self.response

    get = delete = post


@pytest.mark.parametrize("status, error", [(400, ValidationError), (404, NotFound), (500, UpstreamError)])
def test_http_transport_maps_errors(status, error):
    transport = HttpTransport("http://server", session=StubHttpSession(StubHttpResponse(status, {"error": "boom"})))
    with pytest.raises(error) as exc:
        transport.generate({"model": "llama3"})
    assert exc.value.message == "boom"


def test_http_transport_generate_has_no_timeout():
    stub = StubHttpSession(StubHttpResponse(200, {"response": "ok"}))
    assert HttpTransport("http://server/", session=stub).generate({"model": "m"}) == {"response": "ok"}
    url, kwargs = stub.calls[0]
    assert url == "http://server/api/generate"
    assert kwargs["timeout"] is None
