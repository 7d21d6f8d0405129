import structlog

from dynamics_agent.infrastructure.observability.logging import metrics, setup_logging


def test_setup_logging_binds_service_context():
    setup_logging(log_level="DEBUG", log_format="console", service_name="dynamics-explorer-test")
    try:
        assert structlog.is_configured()
        assert structlog.contextvars.get_contextvars()["service"] == "dynamics-explorer-test"
    finally:
        structlog.contextvars.clear_contextvars()


def test_metrics_summary():
    metrics.record_latency("tool.count_records", 10.0)
    metrics.record_latency("tool.count_records", 30.0)
    metrics.increment_counter("loop.rounds")
    metrics.increment_counter("loop.rounds")

    summary = metrics.get_metrics_summary()

    assert summary["latency.tool.count_records"] == {"count": 2, "avg": 20.0, "min": 10.0, "max": 30.0}
    assert summary["loop.rounds"] == 2
