"""Channel gate: shared rate limiting and circuit breaking per channel."""

from cadence.core.gate.breaker import CircuitBreaker, CircuitSnapshot, log_circuit_opened
from cadence.core.gate.gate import ChannelGate
from cadence.core.gate.limiter import ChannelRateLimiter

__all__ = [
    "ChannelGate",
    "ChannelRateLimiter",
    "CircuitBreaker",
    "CircuitSnapshot",
    "log_circuit_opened",
]
