"""
Lightweight infra package initializer.

To avoid circular imports, import directly from submodules, for example:

    from cubular_client.infra.logger import logger
    from cubular_client.infra.metrics import record_latency_metric
    from cubular_client.infra.signals import SignalBus, SessionCleared
    from cubular_client.infra.background_client import get_background_client_manager
"""
