import threading

import pytest

from npcbridge.bridge.control import format_config_reply
from npcbridge.config.store import (
    DEFAULT_STOP_SEQUENCE,
    AiConfig,
    ConfigStore,
    dump_config_text,
    escape_value,
    unescape_value,
)
from npcbridge.errors import ConfigParseError


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "AI_Mod_Config.conf"


def test_defaults():
    config = AiConfig()
    assert config.address == "127.0.0.1:5001"
    assert config.max_context_length == 8192
    assert config.max_length == 128
    assert config.temperature == pytest.approx(0.8)
    assert config.repetition_penalty == pytest.approx(1.1)
    assert config.top_p == pytest.approx(0.9)
    assert config.top_k == 40
    assert config.stop_sequence == DEFAULT_STOP_SEQUENCE
    assert config.character_card("Nobody") == ""


def test_load_creates_file_with_defaults(config_path):
    store = ConfigStore(config_path)
    config = store.load()
    assert config == AiConfig()
    lines = config_path.read_text(encoding="utf-8").splitlines()
    assert lines[:8] == [
        "host=127.0.0.1",
        "port=5001",
        "max_context_length=8192",
        "max_length=128",
        "temperature=0.8",
        "repetition_penalty=1.1",
        "top_p=0.9",
        "top_k=40",
    ]


def test_load_ignores_unknown_keys_and_keeps_defaults_for_absent(config_path):
    config_path.write_text("port=6000\nflavour=vanilla\n\n# comment\ntop_k=12\n", encoding="utf-8")
    config = ConfigStore(config_path).load()
    assert config.port == 6000
    assert config.top_k == 12
    assert config.host == "127.0.0.1"
    assert config.address == "127.0.0.1:6000"


def test_load_keeps_previous_value_for_malformed_field(config_path):
    config_path.write_text("port=abc\ntemperature=0.5\n", encoding="utf-8")
    config = ConfigStore(config_path).load()
    assert config.port == 5001
    assert config.temperature == pytest.approx(0.5)


def test_save_load_round_trip(config_path):
    store = ConfigStore(
        config_path,
        AiConfig(
            host="10.0.0.7",
            port=5002,
            max_context_length=4096,
            max_length=200,
            temperature=0.7300000000000001,
            repetition_penalty=1.17,
            top_p=0.95,
            top_k=0,
            system_prompt="Line one.\nLine two with a \\ backslash.",
            character_cards={"Aldric": "Aldric is a gruff blacksmith.\n", "Mira": "Mira sings."},
        ),
    )
    assert store.save()

    reloaded = ConfigStore(config_path).load()
    assert reloaded == store.snapshot()
    assert reloaded.stop_sequence == DEFAULT_STOP_SEQUENCE


def test_escape_round_trip_preserves_literal_backslash_n():
    raw = "\\n||$||Player:\nnext"
    escaped = escape_value(raw)
    assert "\n" not in escaped
    assert unescape_value(escaped) == raw


def test_apply_updates_recomputes_address():
    store = ConfigStore()
    config = store.apply_updates({"host": "192.168.1.4", "port": "5005"})
    assert config.address == "192.168.1.4:5005"
    assert store.address == "192.168.1.4:5005"


@pytest.mark.parametrize(
    "key,value",
    (
        ("port", "notanumber"),
        ("port", "12abc"),
        ("port", "70000"),
        ("top_k", "-1"),
        ("temperature", "warm"),
        ("top_p", "nan"),
    ),
)
def test_apply_updates_rejects_malformed_numbers(key, value):
    store = ConfigStore()
    before = store.snapshot()
    with pytest.raises(ConfigParseError) as raised:
        store.apply_updates([("host", "10.1.1.1"), (key, value)])
    assert raised.value.field == key
    assert raised.value.error_code == "config_parse"
    assert store.snapshot() == before
    assert store.address == "127.0.0.1:5001"


def test_apply_update_ignores_keys_outside_remote_set():
    store = ConfigStore()
    config = store.apply_update("system_prompt", "be rude")
    assert config.system_prompt == AiConfig().system_prompt


def test_dump_config_text_sorts_character_cards():
    text = dump_config_text(AiConfig(character_cards={"Zed": "z", "Abe": "a"}))
    lines = text.splitlines()
    assert lines[-2:] == ["character.Abe=a", "character.Zed=z"]


def test_config_reply_format():
    line = format_config_reply(AiConfig())
    assert line == (
        "[AIMgr_CONFIG]host=127.0.0.1;port=5001;max_context_length=8192;max_length=128;"
        "temperature=0.80;repetition_penalty=1.10;top_p=0.90;top_k=40;"
    )


def test_snapshots_are_never_torn():
    store = ConfigStore()
    stop = threading.Event()
    torn: list[tuple[str, int]] = []

    def writer():
        flip = False
        while not stop.is_set():
            flip = not flip
            if flip:
                store.apply_updates({"host": "alpha", "port": "1111"})
            else:
                store.apply_updates({"host": "beta", "port": "2222"})

    def reader():
        for _ in range(2000):
            snapshot = store.snapshot()
            pair = (snapshot.host, snapshot.port)
            if pair not in {("127.0.0.1", 5001), ("alpha", 1111), ("beta", 2222)}:
                torn.append(pair)

    thread = threading.Thread(target=writer)
    thread.start()
    try:
        reader()
    finally:
        stop.set()
        thread.join()
    assert torn == []


def test_character_cards_are_immutable_in_snapshots():
    store = ConfigStore(initial=AiConfig(character_cards={"Mira": "m", "Aldric": "a"}))
    snapshot = store.snapshot()
    assert snapshot.character_cards == (("Aldric", "a"), ("Mira", "m"))
    assert snapshot.character_card("Mira") == "m"
    with pytest.raises(TypeError):
        snapshot.character_cards[0] = ("Bram", "b")  # type: ignore[index]
    assert store.snapshot().character_card("Bram") == ""


def test_save_failure_is_a_warning(tmp_path, caplog):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    store = ConfigStore(blocker / "AI_Mod_Config.conf")

    with caplog.at_level("WARNING", logger="npcbridge.config.store"):
        assert store.save() is False

    levels = [record.levelname for record in caplog.records if "Could not write" in record.getMessage()]
    assert levels == ["WARNING"]
