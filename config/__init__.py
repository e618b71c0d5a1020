"""Configuration module for the ScriptGuard service."""

from .settings import get_config, Config, DevelopmentConfig, TestingConfig, ProductionConfig

__all__ = ['get_config', 'Config', 'DevelopmentConfig', 'TestingConfig', 'ProductionConfig']
