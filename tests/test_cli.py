"""
Unit tests for command-line parsing and config loading.
"""

from pathlib import Path

import pytest

from loadgen import ConfigurationError
from pipeline_loadtest import build_config, build_parser, load_pipeline_config, main


@pytest.fixture
def configs(tmp_path):
    primary = tmp_path / "pipeline.json"
    primary.write_text('{"Nodes": [{"repeats": data_repeats_placeholder}]}', encoding="utf-8")
    additional = tmp_path / "pipeline_additional.json"
    additional.write_text('{"Nodes": []}', encoding="utf-8")
    return primary, additional


def test_placeholder_is_replaced(configs):
    primary, additional = configs

    assert load_pipeline_config(primary, 3) == '{"Nodes": [{"repeats": 3}]}'
    assert load_pipeline_config(additional, 3) == '{"Nodes": []}'


def test_unreadable_config(tmp_path):
    with pytest.raises(ConfigurationError):
        load_pipeline_config(tmp_path / "missing.json", 1)


def test_defaults_for_trailing_positionals(configs, dataset):
    primary, additional = configs
    args = build_parser().parse_args(
        ["127.0.0.1", "50052", str(primary), str(additional), "4", "2", str(dataset)]
    )

    config = build_config(args)

    assert config.pipeline_repeats == 1
    assert config.cross_stream_num == 1
    assert config.warmup is True
    assert config.target == "127.0.0.1:50052"
    assert config.pipeline_config == '{"Nodes": [{"repeats": 2}]}'
    assert config.config_paths["json_file"] == str(primary)


def test_all_positionals(configs, dataset):
    primary, additional = configs
    args = build_parser().parse_args(
        ["host", "1", str(primary), str(additional), "10", "1", str(dataset), "3", "4", "0"]
    )

    assert args.pipeline_repeats == 3
    assert args.cross_stream_num == 4
    assert args.warmup_flag is False
    assert args.data_path == Path(dataset)


def test_too_few_arguments():
    with pytest.raises(SystemExit) as excinfo:
        main(["127.0.0.1", "50052", "a.json"])

    assert excinfo.value.code == 2


def test_total_below_cross_is_rejected(configs, dataset):
    primary, additional = configs

    with pytest.raises(SystemExit) as excinfo:
        main(["h", "1", str(primary), str(additional), "3", "1", str(dataset), "1", "4"])

    assert excinfo.value.code == 2


def test_bad_warmup_flag(configs, dataset):
    primary, additional = configs

    with pytest.raises(SystemExit):
        build_parser().parse_args(
            ["h", "1", str(primary), str(additional), "3", "1", str(dataset), "1", "1", "yes"]
        )


def test_missing_data_path_exits_with_error(configs, tmp_path):
    primary, additional = configs

    code = main(
        [
            "127.0.0.1",
            "50052",
            str(primary),
            str(additional),
            "1",
            "1",
            str(tmp_path / "no-dataset"),
            "--output-dir",
            str(tmp_path / "runs"),
        ]
    )

    assert code == 1
    assert not (tmp_path / "runs").exists()


def test_missing_config_file_exits_with_error(configs, dataset, tmp_path):
    _, additional = configs

    code = main(
        ["127.0.0.1", "50052", str(tmp_path / "nope.json"), str(additional), "1", "1", str(dataset)]
    )

    assert code == 1
