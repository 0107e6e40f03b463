import os
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

import boto3

DEFAULT_SSH_USER = "ec2-user"
DEFAULT_POLL_INTERVAL = 1.0


def _env(name):
    return os.environ.get(name, "").strip()


def _env_float(name, default=None):
    value = _env(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


@dataclass(frozen=True)
class Config:
    """
    Settings shared by the EC2 and CloudFormation functions.

    Attributes:
        region: AWS region, None to use the one from the boto3 credential chain
        profile: named AWS profile, None for the default one
        ssh_user: user name put in front of the instance address by ssh_command
        instance_filters: "Name=value" strings always applied when listing
            instances, e.g. ("instance-state-name=running",)
        poll_interval: seconds between two polls of a stack's events
        tail_timeout: give up following a stack after this many seconds,
            None to wait forever
        not_found_grace: seconds during which "stack does not exist" is
            tolerated before the first successful poll
    """

    region: Optional[str] = None
    profile: Optional[str] = None
    ssh_user: str = DEFAULT_SSH_USER
    instance_filters: Tuple[str, ...] = field(default_factory=tuple)
    poll_interval: float = DEFAULT_POLL_INTERVAL
    tail_timeout: Optional[float] = None
    not_found_grace: float = 0.0

    @classmethod
    def from_env(cls):
        filters = tuple(f.strip() for f in _env("AWSFUNCS_INSTANCE_FILTERS").split(";") if f.strip())
        return cls(
            region=_env("AWSFUNCS_REGION") or None,
            profile=_env("AWSFUNCS_PROFILE") or None,
            ssh_user=_env("AWSFUNCS_SSH_USER") or DEFAULT_SSH_USER,
            instance_filters=filters,
            poll_interval=_env_float("AWSFUNCS_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
            tail_timeout=_env_float("AWSFUNCS_TAIL_TIMEOUT"),
            not_found_grace=_env_float("AWSFUNCS_NOT_FOUND_GRACE", 0.0),
        )

    def override(self, **kwargs):
        """Return a copy with every keyword that is not None applied"""
        return replace(self, **{k: v for k, v in kwargs.items() if v is not None})

    def session(self):
        """Build the boto3 Session the configured profile and region describe"""
        return boto3.Session(profile_name=self.profile, region_name=self.region)
