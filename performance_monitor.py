"""
Performance monitoring utilities
Timing wrappers for RPC and quote calls, and process stats for the health endpoint
"""

import asyncio
import logging
import time
import functools
from typing import Dict, Any, Callable
from datetime import datetime, timezone

import psutil

logger = logging.getLogger(__name__)

# Calls slower than this are logged at warning level
SLOW_OPERATION_MS = 2000.0


class OperationTimer:
    """Operation timer usable as a sync or async context manager"""

    def __init__(self, operation_name: str):
        self.operation_name = operation_name
        self.start_time = None
        self.end_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = time.perf_counter()
        duration = self.duration_ms

        if exc_type is not None:
            logger.warning(f"⏱️ {self.operation_name}: {duration:.2f}ms (failed)")
        elif duration > SLOW_OPERATION_MS:
            logger.warning(f"🐢 {self.operation_name}: {duration:.2f}ms (slow)")
        else:
            logger.debug(f"⏱️ {self.operation_name}: {duration:.2f}ms")
        return False

    async def __aenter__(self):
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return self.__exit__(exc_type, exc_val, exc_tb)

    @property
    def duration_ms(self) -> float:
        """Get duration in milliseconds"""
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time) * 1000
        return 0.0


def monitor_performance(operation_name: str):
    """
    Decorator to monitor function performance

    Args:
        operation_name: Name of the operation being monitored
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            with OperationTimer(f"{operation_name}({func.__name__})"):
                return await func(*args, **kwargs)

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            with OperationTimer(f"{operation_name}({func.__name__})"):
                return func(*args, **kwargs)

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def get_performance_stats() -> Dict[str, Any]:
    """Process memory and CPU for the health endpoint"""
    try:
        process = psutil.Process()
        memory_info = process.memory_info()
        return {
            'memory_mb': round(memory_info.rss / (1024 * 1024), 1),
            'cpu_percent': process.cpu_percent(),
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'process_id': process.pid,
        }
    except psutil.Error as e:
        logger.warning(f"Failed to get performance stats: {e}")
        return {
            'error': str(e),
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }
