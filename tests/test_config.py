from __future__ import annotations

import pytest

from airsession.config import RootConfig, load_config, parse_config


def test_missing_file_gives_defaults(tmp_path) -> None:
    cfg = load_config(str(tmp_path / "absent.yaml"))
    assert cfg == RootConfig()
    assert cfg.session.context_length == 2048
    assert cfg.session.channel_capacity == 64


def test_yaml_values_override_defaults(tmp_path) -> None:
    path = tmp_path / "airsession.yaml"
    path.write_text(
        "app:\n"
        "  log_level: debug\n"
        "  gpu_index: null\n"
        "session:\n"
        "  context_length: 4096\n"
        "  channel_capacity: 16\n"
        "  use_mmap: false\n"
        "generation:\n"
        "  max_new_tokens: 32\n"
        "models:\n"
        "  - key: tiny\n"
        "    local_path: ./models/tiny\n"
        "  - display_name: no key, skipped\n",
        encoding="utf-8",
    )
    cfg = load_config(str(path))

    assert cfg.app.log_level == "DEBUG"
    assert cfg.app.gpu_index is None
    assert cfg.session.context_length == 4096
    assert cfg.session.channel_capacity == 16
    assert cfg.session.use_mmap is False
    assert cfg.session.use_mlock is False
    assert cfg.generation.max_new_tokens == 32
    assert [m.key for m in cfg.models] == ["tiny"]
    assert cfg.models[0].display_name == "tiny"


def test_empty_file_gives_defaults(tmp_path) -> None:
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")
    assert load_config(str(path)) == RootConfig()


@pytest.mark.parametrize("field", ["context_length", "channel_capacity"])
def test_non_positive_sizes_are_rejected(field) -> None:
    with pytest.raises(ValueError, match=field):
        parse_config({"session": {field: 0}})
