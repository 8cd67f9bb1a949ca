"""Matching configuration loading."""

from .configuration_loader import ConfigurationResolver, ConfigurationRecord

__all__ = ['ConfigurationResolver', 'ConfigurationRecord']
