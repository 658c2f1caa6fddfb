"""Cloud control-plane implementations."""

from shellfleet.providers.aws import EC2Cloud

__all__ = ["EC2Cloud"]
