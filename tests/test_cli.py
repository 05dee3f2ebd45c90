import json

import pytest

from livability.cli import build_parser, main


def test_prefetch_help_describes_unit_normalization(capsys):
    with pytest.raises(SystemExit):
        build_parser().parse_args(["prefetch", "--help"])
    out = " ".join(capsys.readouterr().out.split())
    assert "Rescale each batch to [0, 1]" in out
    assert "[0, 100]" not in out


def test_prefetch_normalize_flag_is_parsed():
    bounds = ["--north", "52.24", "--south", "52.22", "--east", "21.02", "--west", "21.0"]
    args = build_parser().parse_args(["prefetch", *bounds, "--normalize", "--radius", "1"])
    assert args.normalize is True
    assert args.radius == 1


def test_tiles_command_prints_plan(capsys):
    code = main(["tiles", "--north", "52.24", "--south", "52.22", "--east", "21.02", "--west", "21.0"])
    assert code == 0
    plan = json.loads(capsys.readouterr().out)
    assert plan["too_large"] is False
    assert plan["viewport_tiles"] == plan["tiles"]
