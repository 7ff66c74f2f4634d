"""Driftline — Service Layer.

Services that sit between the persisted queue and the outside world.

Services:
    - ErrorRecoveryService: Retry with backoff, circuit breaking, fallbacks
    - CircuitBreakerRegistry: Per-operation breaker state
    - NetworkMonitor: Connectivity classification and reachability probing

Usage:
    from services import ErrorRecoveryService, NetworkMonitor

    recovery = ErrorRecoveryService(settings.recovery, clock, events)
    network = NetworkMonitor(events, settings.network)
"""

from services.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from services.connectivity_monitor_service import ConnectivitySnapshot, NetworkMonitor, NetworkStatus
from services.recovery_service import ErrorRecoveryService

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "ConnectivitySnapshot",
    "ErrorRecoveryService",
    "NetworkMonitor",
    "NetworkStatus",
]
