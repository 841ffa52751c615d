"""TOML serialization of pydantic configuration models."""
from __future__ import annotations

import pathlib
import sys
from typing import TypeVar

import tomli_w
from pydantic import BaseModel

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    import tomllib
else:  # pragma: <3.11 cover
    import tomli as tomllib

ModelT = TypeVar('ModelT', bound=BaseModel)


def dumps(model: BaseModel) -> str:
    """Render a model as TOML.

    Fields set to `None` are omitted because TOML has no null value.
    """
    return tomli_w.dumps(model.model_dump(exclude_none=True))


def dump(model: BaseModel, filepath: str | pathlib.Path) -> None:
    """Write a model to a TOML file, replacing any existing file."""
    pathlib.Path(filepath).write_text(dumps(model), encoding='utf-8')


def loads(model: type[ModelT], data: str) -> ModelT:
    """Validate TOML text against a model.

    Validation is strict so, for example, a quoted port number is rejected
    rather than coerced.

    Raises:
        tomllib.TOMLDecodeError: If `data` is not valid TOML.
        pydantic.ValidationError: If the document does not match `model`.
    """
    return model.model_validate(tomllib.loads(data), strict=True)


def load(model: type[ModelT], filepath: str | pathlib.Path) -> ModelT:
    """Validate a TOML file against a model."""
    return loads(model, pathlib.Path(filepath).read_text(encoding='utf-8'))
