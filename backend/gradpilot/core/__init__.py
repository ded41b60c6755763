"""
Core application modules.
Contains logging, metrics, tracing, middleware and the circuit breaker.
"""
