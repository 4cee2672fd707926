"""
Logging setup for the SwitchBot BLE Ingester.

The root logger gets a colored console handler and a rotating application
log. BLE, InfluxDB and performance output additionally goes to its own
rotating file through the ``switchbot.<component>`` loggers.
"""

import logging
import logging.handlers
import sys
import time
from collections import Counter, deque
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Deque, Dict, Optional

import colorlog


ROOT_LOGGER_NAME = "switchbot"

CONSOLE_FORMAT = '%(log_color)s%(asctime)s %(levelname)-8s %(name)s: %(message)s'
FILE_FORMAT = '%(asctime)s %(levelname)-8s %(name)s [%(threadName)s] %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

LEVEL_COLORS = {
    'DEBUG': 'cyan',
    'INFO': 'green',
    'WARNING': 'yellow',
    'ERROR': 'red',
    'CRITICAL': 'red,bg_white',
}

# component -> (file name, record format)
COMPONENT_LOGS = {
    'ble': ("ble.log", '%(asctime)s %(levelname)s BLE %(message)s'),
    'influxdb': ("influxdb.log", '%(asctime)s %(levelname)s INFLUX %(message)s'),
    'performance': ("performance.log", '%(asctime)s PERF %(message)s'),
}


class ProductionLogger:
    """
    Process-wide logging configuration.

    Instances also act as the application logger: components call
    ``logger.info(...)`` etc. directly on the object they are given.
    """

    def __init__(self,
                 app_name: str = "switchbot_ingester",
                 log_dir: str = "./logs",
                 log_level: str = "INFO",
                 max_file_size: int = 10 * 1024 * 1024,
                 backup_count: int = 5,
                 enable_console: bool = True):
        self.app_name = app_name
        self.log_dir = Path(log_dir)
        self.level = logging.getLevelName(log_level.upper())
        if not isinstance(self.level, int):
            raise ValueError(f"Unknown log level: {log_level}")
        self.max_file_size = max_file_size
        self.backup_count = backup_count
        self.enable_console = enable_console

        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._logger = logging.getLogger(ROOT_LOGGER_NAME)

        self._configure_root()
        for component, (file_name, fmt) in COMPONENT_LOGS.items():
            self._configure_component(component, file_name, fmt)

    def _rotating_handler(self, file_name: str, fmt: str) -> logging.Handler:
        handler = logging.handlers.RotatingFileHandler(
            self.log_dir / file_name,
            maxBytes=self.max_file_size,
            backupCount=self.backup_count,
            encoding="utf-8",
        )
        handler.setFormatter(logging.Formatter(fmt, datefmt=DATE_FORMAT))
        return handler

    def _configure_root(self):
        root = logging.getLogger()
        root.setLevel(self.level)
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()

        if self.enable_console:
            console = colorlog.StreamHandler(sys.stdout)
            console.setFormatter(colorlog.ColoredFormatter(
                CONSOLE_FORMAT, datefmt=DATE_FORMAT, log_colors=LEVEL_COLORS
            ))
            root.addHandler(console)

        root.addHandler(self._rotating_handler(f"{self.app_name}.log", FILE_FORMAT))

    def _configure_component(self, component: str, file_name: str, fmt: str):
        component_logger = self.for_component(component)
        for handler in list(component_logger.handlers):
            component_logger.removeHandler(handler)
            handler.close()
        component_logger.addHandler(self._rotating_handler(file_name, fmt))

    def for_component(self, component: str) -> logging.Logger:
        """Logger whose records also land in the component's own file."""
        return logging.getLogger(f"{ROOT_LOGGER_NAME}.{component}")

    def isEnabledFor(self, level: int) -> bool:
        return self._logger.isEnabledFor(level)

    def debug(self, message: str, *args, **kwargs):
        self._logger.debug(message, *args, **kwargs)

    def info(self, message: str, *args, **kwargs):
        self._logger.info(message, *args, **kwargs)

    def warning(self, message: str, *args, **kwargs):
        self._logger.warning(message, *args, **kwargs)

    def error(self, message: str, *args, **kwargs):
        self._logger.error(message, *args, **kwargs)

    def critical(self, message: str, *args, **kwargs):
        self._logger.critical(message, *args, **kwargs)


class PerformanceMonitor:
    """
    Counters and timings for the ingestion pipeline.

    Recent samples are kept per metric up to ``history_size``; running
    totals cover the whole process lifetime.
    """

    def __init__(self, logger: Optional[logging.Logger] = None, history_size: int = 1000):
        self.logger = logger or logging.getLogger(f"{ROOT_LOGGER_NAME}.performance")
        self.history_size = history_size
        self.started_at = datetime.now()

        self._samples: Dict[str, Deque[Dict[str, Any]]] = {}
        self._totals: Counter = Counter()
        self._writes: Deque[Dict[str, Any]] = deque(maxlen=history_size)

    def _history(self, metric_name: str) -> Deque[Dict[str, Any]]:
        if metric_name not in self._samples:
            self._samples[metric_name] = deque(maxlen=self.history_size)
        return self._samples[metric_name]

    def record_metric(self, metric_name: str, value: float):
        self._history(metric_name).append({'value': value, 'timestamp': datetime.now()})
        self._totals[metric_name] += value
        self.logger.debug(f"METRIC {metric_name}={value}")

    def log_influxdb_write(self, duration: float, points_written: int, success: bool):
        """Record one sink write attempt."""
        self._writes.append({
            'duration': duration,
            'points_written': points_written,
            'success': success,
            'timestamp': datetime.now(),
        })
        level = logging.INFO if success else logging.WARNING
        self.logger.log(
            level, f"INFLUXDB_WRITE duration={duration:.3f}s points={points_written} success={success}"
        )

    @contextmanager
    def measure_time(self, operation_name: str):
        started = time.perf_counter()
        try:
            yield
        finally:
            elapsed = time.perf_counter() - started
            self.record_metric(f"{operation_name}_duration", elapsed)

    def get_metric_total(self, metric_name: str) -> float:
        return self._totals.get(metric_name, 0)

    def get_performance_summary(self) -> Dict[str, Any]:
        succeeded = [write for write in self._writes if write['success']]
        return {
            'uptime_seconds': (datetime.now() - self.started_at).total_seconds(),
            'advertisements_received': self.get_metric_total('advertisements_received'),
            'decode_errors': self.get_metric_total('decode_errors'),
            'readings_accepted': self.get_metric_total('readings_accepted'),
            'influxdb_writes': {
                'total': len(self._writes),
                'successful': len(succeeded),
                'points_written': sum(write['points_written'] for write in succeeded),
                'avg_duration': (
                    sum(write['duration'] for write in succeeded) / len(succeeded) if succeeded else 0.0
                ),
            },
        }

    def get_metrics(self) -> Dict[str, list]:
        """Snapshot of recent samples per metric, including sink writes."""
        metrics = {name: list(samples) for name, samples in self._samples.items()}
        metrics['influxdb_writes'] = list(self._writes)
        return metrics


def setup_logging(config=None) -> ProductionLogger:
    """Configure logging from ``config`` (a fresh Config is loaded if None)."""
    if config is None:
        from .config import Config
        config = Config()

    return ProductionLogger(
        log_level=config.log_level,
        log_dir=str(config.log_dir),
        max_file_size=config.log_max_file_size,
        backup_count=config.log_backup_count,
        enable_console=config.log_enable_console,
    )
