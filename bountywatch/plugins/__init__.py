"""Content backends and extraction strategies, discovered by ``core.plugin_loader``."""
