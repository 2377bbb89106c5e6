from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from gemini_proxy.payloads import PayloadShape, infer_shape
from gemini_proxy.proxy import MAX_ATTEMPTS, ProxyConfig
from gemini_proxy.settings import Settings
from gemini_proxy.upstream import UpstreamTarget


class TargetEntry(BaseModel):
    url: str
    shape: PayloadShape | None = None

    @field_validator("url")
    @classmethod
    def _require_url(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Target url must not be empty.")
        return normalized

    def to_target(self) -> UpstreamTarget:
        shape = self.shape or infer_shape(self.url)
        if shape is None:
            raise ValueError(
                f"Cannot infer payload shape for '{self.url}'; set 'shape' explicitly."
            )
        return UpstreamTarget(url=self.url, shape=shape)


class TargetsConfig(BaseModel):
    targets: list[TargetEntry] = Field(min_length=1, max_length=MAX_ATTEMPTS)

    def upstream_targets(self) -> tuple[UpstreamTarget, ...]:
        return tuple(entry.to_target() for entry in self.targets)


def load_targets_config(config_path: str) -> TargetsConfig:
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Targets config not found at '{config_path}'. "
            "Create it or unset GEMINI_TARGETS_PATH."
        )

    with path.open("r", encoding="utf-8") as handle:
        raw: Any = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Expected YAML object in '{config_path}'.")
    return TargetsConfig.model_validate(raw)


def build_proxy_config(settings: Settings) -> ProxyConfig:
    if settings.gemini_targets_path:
        default_targets = load_targets_config(
            settings.gemini_targets_path
        ).upstream_targets()
    else:
        default_targets = (
            UpstreamTarget(
                url=settings.gemini_default_message_url,
                shape=PayloadShape.GENERATE_MESSAGE,
            ),
            UpstreamTarget(
                url=settings.gemini_default_content_url,
                shape=PayloadShape.GENERATE_CONTENT,
            ),
        )
    return ProxyConfig(
        override_url=settings.gemini_api_url,
        api_key=settings.gemini_api_key,
        timeout_seconds=settings.gemini_timeout_seconds,
        default_targets=default_targets,
    )
