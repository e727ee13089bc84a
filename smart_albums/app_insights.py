"""
Application Insights telemetry for album generation runs.

Telemetry is enabled only when APPLICATIONINSIGHTS_CONNECTION_STRING is set;
otherwise every track_* call is a no-op.
"""
import os
import logging
from typing import Optional
from opencensus.ext.azure import metrics_exporter
from opencensus.ext.azure.log_exporter import AzureLogHandler
from opencensus.stats import aggregation as aggregation_module
from opencensus.stats import measure as measure_module
from opencensus.stats import stats as stats_module
from opencensus.stats import view as view_module
from opencensus.tags import tag_map as tag_map_module

logger = logging.getLogger(__name__)


class AppInsights:
    """Application Insights telemetry client."""

    def __init__(self, connection_string: Optional[str] = None):
        self.connection_string = connection_string or os.getenv("APPLICATIONINSIGHTS_CONNECTION_STRING")
        self.enabled = bool(self.connection_string)

        if self.enabled:
            self._setup_logging()
            self._setup_metrics()
        else:
            logger.debug("Application Insights not configured (missing connection string)")

    def _setup_logging(self):
        """Forward pipeline logs to Azure."""
        logging.getLogger("smart_albums").addHandler(
            AzureLogHandler(connection_string=self.connection_string))
        logger.info("Application Insights logging enabled")

    def _setup_metrics(self):
        self.stats = stats_module.stats
        self.view_manager = self.stats.view_manager

        self.assets_processed = measure_module.MeasureInt(
            "assets_processed", "Number of library assets scanned", "assets")
        self.albums_created = measure_module.MeasureInt(
            "albums_created", "Number of smart albums saved", "albums")
        self.batches_saved = measure_module.MeasureInt(
            "batches_saved", "Number of album batches persisted", "batches")
        self.fallback_classifications = measure_module.MeasureInt(
            "fallback_classifications", "Clusters tagged by heuristics", "clusters")
        self.processing_time = measure_module.MeasureFloat(
            "generation_time", "Album generation time", "seconds")

        views = [
            view_module.View("assets_processed_view", "Total assets scanned", [],
                             self.assets_processed, aggregation_module.SumAggregation()),
            view_module.View("albums_created_view", "Albums saved per run", [],
                             self.albums_created, aggregation_module.LastValueAggregation()),
            view_module.View("batches_saved_view", "Album batches persisted", [],
                             self.batches_saved, aggregation_module.SumAggregation()),
            view_module.View("fallback_classifications_view", "Heuristically tagged clusters", [],
                             self.fallback_classifications, aggregation_module.SumAggregation()),
            view_module.View("generation_time_view", "Album generation time", [],
                             self.processing_time, aggregation_module.LastValueAggregation()),
        ]
        for view in views:
            self.view_manager.register_view(view)

        exporter = metrics_exporter.new_metrics_exporter(connection_string=self.connection_string)
        self.view_manager.register_exporter(exporter)
        logger.info("Application Insights metrics enabled")

    def _record(self, measure, value):
        mmap = self.stats.stats_recorder.new_measurement_map()
        if isinstance(value, float):
            mmap.measure_float_put(measure, value)
        else:
            mmap.measure_int_put(measure, value)
        mmap.record(tag_map_module.TagMap())

    def track_assets_processed(self, count: int):
        if self.enabled:
            self._record(self.assets_processed, count)

    def track_albums_created(self, count: int):
        if self.enabled:
            self._record(self.albums_created, count)

    def track_batches_saved(self, count: int):
        if self.enabled:
            self._record(self.batches_saved, count)

    def track_fallback_classifications(self, count: int):
        if self.enabled:
            self._record(self.fallback_classifications, count)

    def track_processing_time(self, seconds: float):
        if self.enabled:
            self._record(self.processing_time, float(seconds))
            logger.info(f"Tracked: {seconds:.2f}s generation time")

    def track_event(self, event_name: str, properties: Optional[dict] = None):
        if self.enabled:
            logger.info(f"Event: {event_name}", extra={"custom_dimensions": properties or {}})

    def track_exception(self, exception: Exception):
        if self.enabled:
            logger.exception(f"Exception occurred: {exception}")
