"""
Logging setup and resource metrics for the rank drop analyzer
"""
import logging
import os
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, Optional

import psutil

logger = logging.getLogger(__name__)


@dataclass
class SystemMetrics:
    """Host and process resource usage"""
    timestamp: str
    cpu_usage: float
    memory_usage: float
    disk_usage: float
    process_memory_mb: float


def collect_system_metrics() -> Dict[str, Any]:
    """Collect system performance metrics for the health endpoint"""
    try:
        metrics = SystemMetrics(
            timestamp=datetime.now().isoformat(),
            cpu_usage=psutil.cpu_percent(interval=None),
            memory_usage=psutil.virtual_memory().percent,
            disk_usage=psutil.disk_usage('/').percent,
            process_memory_mb=round(psutil.Process().memory_info().rss / (1024 * 1024), 1),
        )
    except (psutil.Error, OSError) as e:
        logger.error(f"Error collecting system metrics: {e}")
        return {}
    return asdict(metrics)


def setup_logging(log_level: str = "INFO", log_dir: Optional[str] = "logs"):
    """Setup console, file, error and performance logging.

    Passing ``log_dir=None`` keeps logging on the console only.
    """
    detailed_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
    )
    simple_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s'
    )

    # Root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Clear existing handlers
    root_logger.handlers.clear()

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(simple_formatter)
    root_logger.addHandler(console_handler)

    perf_logger = logging.getLogger('performance')
    perf_logger.setLevel(logging.INFO)
    perf_logger.handlers.clear()

    if not log_dir:
        perf_logger.propagate = True
        return root_logger

    os.makedirs(log_dir, exist_ok=True)

    # File handler for all logs
    file_handler = logging.FileHandler(
        os.path.join(log_dir, 'analyzer.log'),
        encoding='utf-8'
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(detailed_formatter)
    root_logger.addHandler(file_handler)

    # Error log handler
    error_handler = logging.FileHandler(
        os.path.join(log_dir, 'errors.log'),
        encoding='utf-8'
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(detailed_formatter)
    root_logger.addHandler(error_handler)

    # Step timings go to their own file
    perf_handler = logging.FileHandler(
        os.path.join(log_dir, 'performance.log'),
        encoding='utf-8'
    )
    perf_handler.setLevel(logging.INFO)
    perf_handler.setFormatter(simple_formatter)
    perf_logger.addHandler(perf_handler)
    perf_logger.propagate = False

    return root_logger
