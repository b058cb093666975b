"""
Kling Generation Gateway Core Components

Shared infrastructure:
- Circuit breaker for provider and storage resilience
- Environment-driven configuration
"""

from .circuit_breaker import CircuitBreaker, CircuitState, get_provider_breaker
from .config import Config, get_config

__all__ = ["CircuitBreaker", "CircuitState", "get_provider_breaker", "Config", "get_config"]
