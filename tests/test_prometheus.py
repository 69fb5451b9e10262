from async_whatsapp_service.prometheus import GatewayMetrics


def test_gateway_metrics_counters_and_gauge():
    metrics = GatewayMetrics()

    metrics.inc_incoming("acc1")
    metrics.inc_outgoing("acc1", "failed")
    metrics.inc_webhook("", "success")
    metrics.set_sessions(["ready", "ready", "qr_ready"])

    output = metrics.generate_latest()
    assert b'gwa_incoming_messages_total{account_id="acc1",status="success"} 1.0' in output
    assert b'gwa_outgoing_messages_total{account_id="acc1",status="failed"} 1.0' in output
    assert b'account_id="unknown"' in output
    assert b'gwa_sessions{status="ready"} 2.0' in output
    assert b'gwa_sessions{status="disconnected"} 0.0' in output


def test_instances_use_separate_registries():
    first = GatewayMetrics()
    second = GatewayMetrics()
    first.inc_incoming("acc1")
    assert b"acc1" not in second.generate_latest()
