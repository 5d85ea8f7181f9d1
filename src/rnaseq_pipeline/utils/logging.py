"""
Logging utilities for the RNA-seq Pipeline.
"""


from pathlib import Path
from structlog.stdlib import LoggerFactory
from typing import Any, Dict, Callable, Optional

import asyncio
import csv
import datetime
import logging
import psutil
import structlog
import sys
import time


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[Path] = None,
    log_format: str = "json"
) -> structlog.BoundLogger:
    """
    Set up structured logging for the pipeline.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path
        log_format: Log format ("json" or "console")

    Returns:
        Configured logger instance
    """
    # Configure structlog
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Configure standard library logging
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            format="%(message)s",
            filename=str(log_file),
            filemode="w",
            level=getattr(logging, log_level.upper()),
            force=True,
        )
    else:
        logging.basicConfig(
            format="%(message)s",
            stream=sys.stdout,
            level=getattr(logging, log_level.upper()),
            force=True,
        )

    return structlog.get_logger("rnaseq_pipeline")


class PipelineLogger:
    """Context manager for pipeline logging with performance tracking."""

    def __init__(self, logger: structlog.BoundLogger, operation: str):
        """
        Initialize the pipeline logger.

        Args:
            logger: Structured logger instance
            operation: Name of the operation being logged
        """
        self.logger = logger
        self.operation = operation
        self.start_time = None
        self.context: Dict[str, Any] = {}

    def __enter__(self):
        """Enter the logging context."""
        self.start_time = time.time()
        self.logger.info(
            f"Starting {self.operation}",
            operation=self.operation,
            **self.context
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit the logging context."""
        duration = time.time() - self.start_time

        if exc_type is None:
            self.logger.info(
                f"Completed {self.operation}",
                operation=self.operation,
                duration_seconds=duration,
                status="success",
                **self.context
            )
        else:
            self.logger.error(
                f"Failed {self.operation}",
                operation=self.operation,
                duration_seconds=duration,
                status="error",
                error_type=exc_type.__name__,
                error_message=str(exc_val),
                **self.context
            )

    def add_context(self, **kwargs):
        """Add context information to the logger."""
        self.context.update(kwargs)
        return self

    def log_progress(self, message: str, **kwargs):
        """Log progress information."""
        self.logger.info(
            message,
            operation=self.operation,
            **{**self.context, **kwargs}
        )


class PerformanceMonitor:
    """Monitor and log performance metrics of pipeline stages."""

    def __init__(
        self,
        logger: structlog.BoundLogger,
        csv_path: Path = Path("performance_log.csv")
    ):
        """
        Initialize the performance monitor.

        Args:
            logger: Structured logger instance
            csv_path: CSV file receiving periodic resource samples
        """
        self.logger = logger
        self.metrics: Dict[str, float] = {}
        self.start_times: Dict[str, float] = {}

        # Async monitor control
        self._stop_event: Optional[asyncio.Event] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self.current_section: str = "init"

        self.csv_path = csv_path

        # peaks
        self.peak_ram_mb = 0.0
        self.peak_cpu = 0.0
        self.peak_ram_mb_section = 0.0
        self.peak_cpu_section = 0.0

    def start_timer(self, name: str):
        """Start a timer for a named operation."""
        self.start_times[name] = time.time()

    def stop_timer(self, name: str) -> float:
        """Stop a timer and return the duration."""
        if name not in self.start_times:
            raise ValueError(f"Timer '{name}' was not started")

        duration = time.time() - self.start_times[name]
        self.metrics[name] = duration

        self.logger.info(
            f"Operation '{name}' completed",
            operation=name,
            duration_seconds=duration
        )

        del self.start_times[name]
        return duration

    def log_system_info(self, work_dir: Path = Path("/")):
        """Log the resources available to the run."""
        self.logger.info(
            "System information",
            cpu_count=psutil.cpu_count(),
            memory_total_gb=psutil.virtual_memory().total / 1024 / 1024 / 1024,
            disk_free_gb=psutil.disk_usage(str(work_dir)).free / 1024 / 1024 / 1024
        )

    def get_summary(self) -> Dict[str, float]:
        """Seconds spent in each finished section."""
        return self.metrics.copy()

    def init_csv(self):
        header = [
            "timestamp",
            "section",
            "cpu_percent",
            "ram_percent",
            "proc_ram_mb",
        ]
        self.csv_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.csv_path, "w", newline="") as f:
            writer = csv.writer(f)
            writer.writerow(header)

    def sample(self) -> Dict[str, Any]:
        """Take one resource sample and update peaks."""
        process = psutil.Process()
        cpu_total = psutil.cpu_percent(interval=None)
        # Child processes are the external tools doing the real work
        proc_ram = process.memory_info().rss
        for child in process.children(recursive=True):
            try:
                proc_ram += child.memory_info().rss
            except psutil.Error:
                continue
        proc_ram = proc_ram / 1024**2

        self.peak_cpu = max(self.peak_cpu, cpu_total)
        self.peak_cpu_section = max(self.peak_cpu_section, cpu_total)
        self.peak_ram_mb = max(self.peak_ram_mb, proc_ram)
        self.peak_ram_mb_section = max(self.peak_ram_mb_section, proc_ram)

        return {
            "timestamp": datetime.datetime.now().isoformat(),
            "section": self.current_section,
            "cpu_percent": cpu_total,
            "ram_percent": psutil.virtual_memory().percent,
            "proc_ram_mb": proc_ram,
        }

    async def _monitor_loop(self, interval: float):
        """Run until stop is requested."""
        while not self._stop_event.is_set():
            row = self.sample()
            with open(self.csv_path, "a", newline="") as f:
                writer = csv.writer(f)
                writer.writerow([
                    row["timestamp"],
                    row["section"],
                    row["cpu_percent"],
                    row["ram_percent"],
                    row["proc_ram_mb"],
                ])

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    def start_monitoring(
        self,
        interval: float = 5.0,
        section: str = "global"
    ):
        """Start asynchronous background monitoring. Needs a running loop."""
        self._stop_event = asyncio.Event()
        self.current_section = section
        self._monitor_task = asyncio.create_task(self._monitor_loop(interval))

    async def stop_monitoring(self):
        """Stop async monitor and wait for its task to finish."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._monitor_task:
            await self._monitor_task
            self._monitor_task = None

    def report_peaks(self):
        self.logger.info(
            "Peak resource usage",
            peak_cpu_percent=self.peak_cpu,
            peak_ram_mb=self.peak_ram_mb,
        )
        if self.current_section != "global":
            self.logger.info(
                f"Peak resource usage ({self.current_section})",
                peak_cpu_percent_section=self.peak_cpu_section,
                peak_ram_mb_section=self.peak_ram_mb_section,
            )
        self.reset_section_peaks()

    def reset_section_peaks(self):
        """Reset peak metrics for the current section."""
        self.peak_ram_mb_section = 0.0
        self.peak_cpu_section = 0.0

    async def section(self, name: str, func: Callable, *args, **kwargs):
        """Run a blocking stage in a worker thread, tagged with its name."""
        self.reset_section_peaks()
        self.current_section = name
        self.start_timer(name)

        try:
            result = await asyncio.to_thread(func, *args, **kwargs)
        finally:
            self.report_peaks()
            self.stop_timer(name)
        return result


def log_command(logger: structlog.BoundLogger, command: str, **kwargs):
    """Log a command being executed."""
    logger.info(
        "Executing command",
        command=command,
        **kwargs
    )


def log_file_operation(logger: structlog.BoundLogger, operation: str, file_path: Path, **kwargs):
    """Log a file operation."""
    logger.info(
        f"File {operation}",
        operation=operation,
        file_path=str(file_path),
        file_size_mb=file_path.stat().st_size / 1024 / 1024 if file_path.exists() else 0,
        **kwargs
    )


def log_error(logger: structlog.BoundLogger, error: Exception, context: Optional[Dict[str, Any]] = None):
    """Log an error with context."""
    logger.error(
        "Pipeline error",
        error_type=type(error).__name__,
        error_message=str(error),
        context=context or {}
    )
