from __future__ import annotations

import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from dbkeeper.core.config import get_settings
from dbkeeper.core.errors import ConfigurationError
from dbkeeper.domain.types import (
    STRATEGY_NAMES,
    ArtifactSelector,
    RetentionPolicy,
    ScheduleEntry,
    TargetDescriptor,
)
from dbkeeper.services.cron import parse_cron


_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhdw])\s*$", re.IGNORECASE)
_DURATION_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days", "w": "weeks"}


def parse_duration(text: str) -> timedelta:
    match = _DURATION_RE.match(text)
    if match is None:
        raise ValueError(f"invalid duration {text!r}; use forms like 36h, 7d or 4w")
    amount, unit = match.groups()
    return timedelta(**{_DURATION_UNITS[unit.lower()]: int(amount)})


class TargetConfig(BaseModel):
    # One MySQL database to back up; credentials may come from env or a ~/.my.cnf style file.
    name: str = Field(pattern=r"^[A-Za-z0-9_.-]+$")
    database: str
    host: str = "127.0.0.1"
    port: int = 3306
    user: str | None = None
    password: str | None = None
    password_env: str | None = None
    option_file: str | None = None
    socket: str | None = None

    def to_descriptor(self) -> TargetDescriptor:
        password = self.password
        if self.password_env:
            password = os.environ.get(self.password_env)
            if password is None:
                raise ConfigurationError(f"target {self.name}: environment variable {self.password_env} is not set")
        return TargetDescriptor(
            name=self.name,
            database=self.database,
            host=self.host,
            port=self.port,
            user=self.user,
            password=password,
            option_file=Path(self.option_file).expanduser() if self.option_file else None,
            socket=self.socket,
        )


class TierConfig(BaseModel):
    tier: str
    keep: int | None = Field(default=None, ge=0)
    max_age: str | None = None
    strategy: str | None = None

    @field_validator("max_age")
    @classmethod
    def _check_max_age(cls, value: str | None) -> str | None:
        if value is not None:
            parse_duration(value)
        return value

    @model_validator(mode="after")
    def _check_bounds(self) -> "TierConfig":
        if self.keep is None and self.max_age is None:
            raise ValueError(f"tier {self.tier!r} needs keep or max_age")
        return self

    def to_policy(self, target: str) -> RetentionPolicy:
        return RetentionPolicy(
            tier=self.tier,
            selector=ArtifactSelector(target=target, strategy=self.strategy),
            keep=self.keep,
            max_age=parse_duration(self.max_age) if self.max_age else None,
        )


class ScheduleConfig(BaseModel):
    cadence: str
    target: str
    strategy: str = "logical"
    policy: str | None = None
    retention_cadence: str | None = None

    @field_validator("cadence", "retention_cadence")
    @classmethod
    def _check_cron(cls, value: str | None) -> str | None:
        if value is not None:
            try:
                parse_cron(value)
            except ConfigurationError as exc:
                raise ValueError(str(exc)) from exc
        return value

    @field_validator("strategy")
    @classmethod
    def _check_strategy(cls, value: str) -> str:
        if value not in STRATEGY_NAMES:
            raise ValueError(f"strategy must be one of {', '.join(STRATEGY_NAMES)}")
        return value

    def to_entry(self) -> ScheduleEntry:
        return ScheduleEntry(
            cadence=self.cadence,
            target=self.target,
            strategy=self.strategy,
            policy=self.policy,
            retention_cadence=self.retention_cadence,
        )


class DbKeeperConfig(BaseModel):
    targets: list[TargetConfig] = Field(default_factory=list)
    policies: dict[str, list[TierConfig]] = Field(default_factory=dict)
    schedules: list[ScheduleConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_references(self) -> "DbKeeperConfig":
        names = [target.name for target in self.targets]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate target names: {', '.join(duplicates)}")
        for schedule in self.schedules:
            if schedule.target not in names:
                raise ValueError(f"schedule references unknown target {schedule.target!r}")
            if schedule.policy is not None and schedule.policy not in self.policies:
                raise ValueError(f"schedule references unknown policy set {schedule.policy!r}")
        for policy_name, tiers in self.policies.items():
            unbounded = [tier.tier for tier in tiers if tier.max_age is None]
            strategies = {tier.strategy for tier in tiers if tier.max_age is None}
            if len(unbounded) > len(strategies):
                raise ValueError(f"policy set {policy_name!r} has more than one tier without max_age per selector")
        return self

    def target_names(self) -> list[str]:
        return [target.name for target in self.targets]

    def target(self, name: str) -> TargetDescriptor:
        for target in self.targets:
            if target.name == name:
                return target.to_descriptor()
        raise ConfigurationError(f"unknown target {name!r}")

    def schedule_entries(self, target: str | None = None) -> list[ScheduleEntry]:
        return [schedule.to_entry() for schedule in self.schedules if target is None or schedule.target == target]

    def policies_for(self, target: str) -> list[RetentionPolicy]:
        # Every policy set attached to the target's schedules applies, each set once.
        seen: set[str] = set()
        policies: list[RetentionPolicy] = []
        for schedule in self.schedules:
            if schedule.target != target or schedule.policy is None or schedule.policy in seen:
                continue
            seen.add(schedule.policy)
            policies.extend(tier.to_policy(target) for tier in self.policies[schedule.policy])
        return policies


def parse_config(payload: dict[str, Any] | None) -> DbKeeperConfig:
    try:
        return DbKeeperConfig.model_validate(payload or {})
    except ValidationError as exc:
        raise ConfigurationError(f"invalid dbkeeper config: {exc}") from exc


def load_config(path: str | Path | None = None) -> DbKeeperConfig:
    resolved = Path(path or get_settings().config_path)
    if not resolved.exists():
        raise ConfigurationError(f"config file {resolved} not found")
    try:
        payload = yaml.safe_load(resolved.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"config file {resolved} is not valid YAML: {exc}") from exc
    if payload is not None and not isinstance(payload, dict):
        raise ConfigurationError(f"config file {resolved} must contain a mapping")
    return parse_config(payload)
