from backpressure import BackpressureController, Regime


class TestClassification:

    def test_healthy(self, backpressure):
        assert backpressure.evaluate() == Regime.HEALTHY
        assert not backpressure.is_active()

    def test_degraded_on_elevated_latency(self, backpressure, probe):
        probe.latency_ms = 700
        assert backpressure.evaluate() == Regime.DEGRADED
        assert not backpressure.is_active()

    def test_latency_breach_triggers_cooldown(self, backpressure, probe):
        probe.latency_ms = 1500
        assert backpressure.evaluate() == Regime.BACKPRESSURE_ACTIVE
        assert backpressure.is_active()
        assert backpressure.cooldown_remaining() == 300

        status = backpressure.status()
        assert status.regime == Regime.BACKPRESSURE_ACTIVE
        assert "latency" in status.trigger_reason

    def test_error_rate_breach(self, backpressure):
        for _ in range(4):
            backpressure.record_request()
        for _ in range(6):
            backpressure.record_error()

        sample = backpressure.sample()
        assert sample.request_count == 10
        assert sample.error_rate == 60.0
        assert backpressure.evaluate() == Regime.BACKPRESSURE_ACTIVE
        assert "error rate" in backpressure.status().trigger_reason

    def test_error_rate_ignored_below_minimum_requests(self, backpressure):
        for _ in range(3):
            backpressure.record_error()
        assert backpressure.evaluate() == Regime.HEALTHY

    def test_probe_failure_is_a_breach(self, backpressure, probe):
        probe.error = ConnectionError("could not connect to server")
        assert backpressure.evaluate() == Regime.BACKPRESSURE_ACTIVE
        assert backpressure.status().trigger_reason.startswith("Store error")


class TestCooldown:

    def test_no_resampling_during_cooldown(self, backpressure, probe, clock):
        backpressure.trigger("manual")
        calls = probe.calls

        clock.advance(299)
        assert backpressure.evaluate() == Regime.BACKPRESSURE_ACTIVE
        assert probe.calls == calls

    def test_resumes_after_cooldown_and_healthy_resample(self, backpressure, probe, clock):
        backpressure.trigger("manual")
        clock.advance(300)

        assert backpressure.evaluate() == Regime.HEALTHY
        assert probe.calls == 1
        assert backpressure.status().trigger_reason is None

    def test_retriggers_when_still_unhealthy(self, backpressure, probe, clock):
        backpressure.trigger("manual")
        probe.latency_ms = 5000
        clock.advance(301)

        assert backpressure.evaluate() == Regime.BACKPRESSURE_ACTIVE
        assert backpressure.cooldown_remaining() == 300

    def test_state_shared_between_processes(self, backpressure, fake_redis, probe, clock):
        backpressure.trigger("shared")
        other = BackpressureController(fake_redis, probe=probe, clock=clock)
        assert other.is_active()
        assert other.status().trigger_reason == "shared"

    def test_status_serializes(self, backpressure, probe):
        probe.latency_ms = 700
        backpressure.evaluate()
        data = backpressure.status().to_dict()
        assert data["regime"] == "degraded"
        assert data["is_active"] is False
        assert data["last_sample"]["latency_ms"] == 700


class TestLimits:

    def test_concurrency_cap_per_regime(self, backpressure):
        assert backpressure.concurrency_cap(Regime.HEALTHY) == 5
        assert backpressure.concurrency_cap(Regime.DEGRADED) == 2
        assert backpressure.concurrency_cap(Regime.BACKPRESSURE_ACTIVE) == 0

    def test_degraded_chunk_size(self, backpressure):
        assert backpressure.effective_chunk_size(100, Regime.HEALTHY) == 100
        assert backpressure.effective_chunk_size(100, Regime.DEGRADED) == 50
        assert backpressure.effective_chunk_size(1, Regime.DEGRADED) == 1
