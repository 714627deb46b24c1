from __future__ import annotations

import pathlib
import sys

from pydantic import BaseModel

from colormatch.utils.config import dump
from colormatch.utils.config import dumps
from colormatch.utils.config import load
from colormatch.utils.config import loads

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    import tomllib
else:  # pragma: <3.11 cover
    import tomli as tomllib


class _Palette(BaseModel):
    name: str
    colors: list[str]


class _Config(BaseModel):
    shared: bool
    brightness: float
    label: str | None = None
    palette: _Palette


TEST_CONFIG = _Config(
    shared=True,
    brightness=0.5,
    palette=_Palette(name='sunset', colors=['#ff8800', '#aa0044']),
)
TEST_CONFIG_TOML = """\
shared = true
brightness = 0.5

[palette]
name = "sunset"
colors = ["#ff8800", "#aa0044"]
"""


def test_dump(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'test.toml'

    with open(filepath, 'wb') as f:
        dump(TEST_CONFIG, f)

    with open(filepath, 'rb') as f:
        data = tomllib.load(f)

    assert data == TEST_CONFIG.model_dump(exclude_none=True)
    assert 'label' not in data


def test_dump_keeps_none_values_if_requested() -> None:
    class _Nullable(BaseModel):
        label: str | None = None

    assert 'label' not in dumps(_Nullable())
    assert dumps(_Nullable(label='x'), exclude_none=False) == 'label = "x"\n'


def test_dumps() -> None:
    assert loads(_Config, dumps(TEST_CONFIG)) == TEST_CONFIG


def test_load(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'test.toml'

    with open(filepath, 'w') as f:
        f.write(TEST_CONFIG_TOML)

    with open(filepath, 'rb') as f:
        assert load(_Config, f) == TEST_CONFIG


def test_loads() -> None:
    assert loads(_Config, TEST_CONFIG_TOML) == TEST_CONFIG
