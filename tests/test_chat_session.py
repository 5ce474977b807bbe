import threading

import pytest

from waico.chat.model import ChatModel
from waico.chat.session import ChatSession
from waico.errors import InferenceError, MaxTokensExceededError, NotFoundError, NotInitializedError


class FakeChatModel:
    """One token per word; replies with a fixed sentence in two chunks."""

    def __init__(self, reply=("Hello ", "there."), fail=False):
        self.reply = reply
        self.fail = fail
        self.seen = []

    def count_tokens(self, text):
        return len(text.split())

    def stream(self, messages):
        self.seen.append(list(messages))
        for i, chunk in enumerate(self.reply):
            if self.fail and i == 1:
                raise InferenceError("generation failed")
            yield chunk


def test_reply_is_streamed_and_recorded():
    session = ChatSession(FakeChatModel(), system_prompt="Be brief.")

    chunks = list(session.send("how are you"))

    assert chunks == ["Hello ", "there."]
    assert session.history == [
        {"role": "user", "content": "how are you"},
        {"role": "assistant", "content": "Hello there."},
    ]
    assert session.token_count == 3 + 2


def test_system_prompt_goes_first():
    model = FakeChatModel()
    session = ChatSession(model, system_prompt="Be brief.")
    list(session.send("hi"))
    assert model.seen[0][0] == {"role": "system", "content": "Be brief."}
    assert model.seen[0][1] == {"role": "user", "content": "hi"}


def test_history_accumulates():
    model = FakeChatModel()
    session = ChatSession(model)
    list(session.send("one"))
    list(session.send("two"))
    assert len(model.seen[1]) == 3
    assert len(session.history) == 4


def test_token_limit_rejects_before_generating():
    model = FakeChatModel()
    session = ChatSession(model, max_tokens=10, reserved_tokens=5)

    with pytest.raises(MaxTokensExceededError, match="Max: 10, Reserved: 5"):
        list(session.send("a b c d e"))

    assert model.seen == []
    assert session.history == []
    assert session.token_count == 0


def test_token_limit_counts_history():
    session = ChatSession(FakeChatModel(), max_tokens=10, reserved_tokens=2)
    list(session.send("a b"))  # 2 + 2 reply tokens
    with pytest.raises(MaxTokensExceededError):
        list(session.send("c d e f"))


def test_failed_generation_rolls_back_user_turn():
    session = ChatSession(FakeChatModel(fail=True))

    with pytest.raises(InferenceError):
        list(session.send("hello"))

    assert session.history == []
    assert session.token_count == 0


def test_reset():
    session = ChatSession(FakeChatModel())
    list(session.send("hi"))
    session.reset()
    assert session.history == []
    assert session.token_count == 0


def test_chat_model_not_initialized():
    model = ChatModel()
    with pytest.raises(NotInitializedError):
        model.count_tokens("hello")
    with pytest.raises(NotInitializedError):
        list(model.stream([{"role": "user", "content": "hello"}]))


def test_chat_model_requires_config(tmp_path):
    (tmp_path / "gemma").mkdir()
    with pytest.raises(NotFoundError, match="config.json"):
        ChatModel().initialize(tmp_path / "gemma")


def test_chat_model_dispose_when_not_loaded():
    model = ChatModel()
    model.dispose()
    assert not model.is_initialized


def test_chat_model_streams_reply(fake_transformers, chat_model_dir):
    torch, transformers = fake_transformers
    model = ChatModel(max_new_tokens=32, temperature=0.0)
    model.initialize(chat_model_dir)

    loaded = transformers.loaded[0]
    assert (loaded.dtype, loaded.device_map) == ("float32", "cpu")
    assert list(model.stream([{"role": "user", "content": "Hi"}])) == ["Hello", " there", "."]
    assert loaded.generate_kwargs["max_new_tokens"] == 32
    assert loaded.generate_kwargs["do_sample"] is False
    assert model.generate([{"role": "user", "content": "Hi"}]) == "Hello there."
    assert model.count_tokens("how are you") == 3


def test_chat_model_loads_half_precision_on_gpu(fake_transformers, chat_model_dir):
    torch, transformers = fake_transformers
    torch.cuda.available = True
    model = ChatModel()
    model.initialize(chat_model_dir)
    model.initialize(chat_model_dir)

    assert len(transformers.loaded) == 1
    assert (transformers.loaded[0].dtype, transformers.loaded[0].device_map) == ("float16", "auto")

    model.dispose()
    assert not model.is_initialized
    assert torch.cuda.cache_clears == 1
    with pytest.raises(NotInitializedError):
        model.count_tokens("hi")


def test_chat_model_generation_failure(fake_transformers, chat_model_dir):
    _, transformers = fake_transformers
    model = ChatModel()
    model.initialize(chat_model_dir)
    transformers.loaded[0].fail_after = 1

    got = []
    with pytest.raises(InferenceError, match="CUDA out of memory"):
        for chunk in model.stream([{"role": "user", "content": "Hi"}]):
            got.append(chunk)
    assert got == ["Hello"]


def test_chat_model_consumer_stops_early(fake_transformers, chat_model_dir):
    model = ChatModel()
    model.initialize(chat_model_dir)
    before = threading.active_count()

    chunks = model.stream([{"role": "user", "content": "Hi"}])
    assert next(chunks) == "Hello"
    chunks.close()

    # The generate thread was joined on close
    assert threading.active_count() == before


def test_session_over_chat_model(fake_transformers, chat_model_dir):
    model = ChatModel()
    model.initialize(chat_model_dir)
    session = ChatSession(model)

    assert "".join(session.send("Hi")) == "Hello there."
    assert session.history[-1] == {"role": "assistant", "content": "Hello there."}
