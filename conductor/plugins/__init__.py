"""Plugin system: hook pipeline, plugin protocol and registry.

Usage:
    from conductor.plugins import HookPipeline, HookPoint, PluginRegistry

    pipeline = HookPipeline()
    registry = PluginRegistry(pipeline, dispatcher)
    registry.register(MyPlugin())
    registry.complete_loading()
"""

from .base import ConductorPlugin, Hook, HookPoint
from .hooks import HookContext, HookPipeline
from .registry import PluginRegistry

__all__ = ['ConductorPlugin', 'Hook', 'HookContext', 'HookPipeline', 'HookPoint', 'PluginRegistry']
