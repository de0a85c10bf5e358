from prometheus_client import CollectorRegistry, Counter, Histogram, start_http_server

NAMESPACE = 'weather_pipeline'


class MetricsCollector:
    """Prometheus counters and timers for ingestion and statistics runs.

    Each collector owns its registry so several can live in one process.
    """

    def __init__(self, namespace=NAMESPACE, registry=None):
        self.namespace = namespace
        self.registry = registry if registry is not None else CollectorRegistry()

        self.ingestion_records_total = Counter(
            'ingestion_records_total',
            'Observations committed to storage',
            namespace=namespace, registry=self.registry,
        )
        self.ingestion_errors_total = Counter(
            'ingestion_errors_total',
            'Ingestion failures by type',
            ['error_type'],
            namespace=namespace, registry=self.registry,
        )
        self.ingestion_files_total = Counter(
            'ingestion_files_total',
            'Files processed by outcome',
            ['status'],
            namespace=namespace, registry=self.registry,
        )
        self.ingestion_batch_size = Histogram(
            'ingestion_batch_size',
            'Observations per flushed batch',
            buckets=(1, 10, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
            namespace=namespace, registry=self.registry,
        )
        self.ingestion_duration_seconds = Histogram(
            'ingestion_duration_seconds',
            'Wall-clock duration of an ingestion run',
            buckets=(1, 5, 10, 30, 60, 120, 300, 600, 1800, 3600),
            namespace=namespace, registry=self.registry,
        )
        self.stats_calculation_duration_seconds = Histogram(
            'stats_calculation_duration_seconds',
            'Duration of one station-year aggregate query',
            buckets=(0.001, 0.005, 0.01, 0.02, 0.05, 0.1, 0.2, 0.5, 1.0, 2.0, 5.0),
            namespace=namespace, registry=self.registry,
        )
        self.statistics_saved_total = Counter(
            'statistics_saved_total',
            'Station-year statistics written',
            namespace=namespace, registry=self.registry,
        )
        self.statistics_errors_total = Counter(
            'statistics_errors_total',
            'Station-year pairs that failed to compute or save',
            namespace=namespace, registry=self.registry,
        )

    def record_ingestion_error(self, error_type, amount=1):
        self.ingestion_errors_total.labels(error_type=error_type).inc(amount)

    def record_file(self, status):
        self.ingestion_files_total.labels(status=status).inc()

    def observe_batch(self, size):
        self.ingestion_batch_size.observe(size)
        self.ingestion_records_total.inc(size)

    def observe_ingestion(self, seconds):
        self.ingestion_duration_seconds.observe(seconds)

    def observe_stats_calculation(self, seconds):
        self.stats_calculation_duration_seconds.observe(seconds)

    def record_statistic_saved(self):
        self.statistics_saved_total.inc()

    def record_statistic_error(self):
        self.statistics_errors_total.inc()

    def get(self, name, labels=None):
        """Current value of a sample, e.g. get('ingestion_records_total')."""
        value = self.registry.get_sample_value(f'{self.namespace}_{name}', labels or {})
        return value if value is not None else 0.0

    def serve(self, port, addr='0.0.0.0'):
        """Expose the registry over HTTP for scraping."""
        return start_http_server(port, addr=addr, registry=self.registry)
