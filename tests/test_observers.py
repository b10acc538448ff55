import pytest

from conftest import SENDER, TX_HASH, ScriptedRpc, make_submission
from rtabench.errors import ObserverError, RpcError
from rtabench.harness import LatencyRaceHarness
from rtabench.models import ObservationStatus, Trial
from rtabench.observers import (
    NonceObserver,
    ReceiptObserver,
    SubscriptionObserver,
    match_any_new_head,
    match_transaction_hash,
)


def make_trial(clock, baseline=5, timeout_ms=1000, submission=None, trial_id=1):
    return Trial(
        trial_id=trial_id,
        baseline=baseline,
        start_ms=clock.now_ms(),
        timeout_ms=timeout_ms,
        submission=make_submission() if submission is None else submission
    )


class TestPollingObserver:

    @pytest.mark.asyncio
    async def test_immediate_change_reports_near_zero(self, clock):
        """Test that a change visible on the first query is not delayed by one cadence"""
        rpc = ScriptedRpc(counts={'pending': [6]})
        observer = NonceObserver(rpc, 'pending')

        observation = await observer.observe(make_trial(clock), clock)

        assert observation.success
        assert observation.elapsed_ms < observer.interval_ms
        assert observation.elapsed_ms == 0
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_never_changes_reports_exact_timeout(self, clock):
        """Test that an unchanged state yields exactly timeout_ms and success=False"""
        rpc = ScriptedRpc(counts={'latest': [5]})
        observer = NonceObserver(rpc, 'latest')
        trial = make_trial(clock, timeout_ms=1000)

        observation = await observer.observe(trial, clock)

        assert observation.success is False
        assert observation.status is ObservationStatus.TIMEOUT
        assert observation.elapsed_ms == 1000
        assert clock.now_ms() == trial.deadline_ms
        assert all(ms <= 100 for ms in clock.sleeps)

    @pytest.mark.asyncio
    async def test_last_sleep_does_not_overshoot(self, clock):
        """Test that the final sleep is cut at the deadline"""
        rpc = ScriptedRpc(counts={'latest': [5]})
        observer = NonceObserver(rpc, 'latest')

        observation = await observer.observe(make_trial(clock, timeout_ms=250), clock)

        assert clock.sleeps == [100, 100, 50]
        assert observation.elapsed_ms == 250

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, clock):
        """Test that failed polls are retried on the next tick"""
        rpc = ScriptedRpc(counts={'pending': [
            RpcError("eth_getTransactionCount", "HTTP 502"),
            RpcError("eth_getTransactionCount", "HTTP 502"),
            6,
        ]})
        observer = NonceObserver(rpc, 'pending')

        observation = await observer.observe(make_trial(clock), clock)

        assert observation.success
        assert observation.elapsed_ms == 200
        assert observation.error_count == 2

    @pytest.mark.asyncio
    async def test_persistent_errors_end_as_timeout(self, clock):
        """Test that an exhausted budget with failing polls is a timeout, not an error"""
        rpc = ScriptedRpc(counts={'pending': [RpcError("eth_getTransactionCount", "connection refused")]})
        observer = NonceObserver(rpc, 'pending')

        observation = await observer.observe(make_trial(clock, timeout_ms=1000), clock)

        assert observation.status is ObservationStatus.TIMEOUT
        assert observation.elapsed_ms == 1000
        assert observation.error_count == 11
        assert "connection refused" in observation.error

    @pytest.mark.asyncio
    async def test_change_seen_after_deadline_is_timeout(self, clock):
        """Test that a slow query returning after the deadline does not count"""
        rpc = ScriptedRpc(clock=clock, latency_ms=300, counts={'pending': [5, 5, 6]})
        observer = NonceObserver(rpc, 'pending')

        observation = await observer.observe(make_trial(clock, timeout_ms=1000), clock)

        assert observation.status is ObservationStatus.TIMEOUT
        assert observation.elapsed_ms == 1000

    @pytest.mark.asyncio
    async def test_hex_baseline(self, clock):
        """Test that a hex nonce baseline compares numerically"""
        rpc = ScriptedRpc(counts={'pending': [5, 6]})
        observer = NonceObserver(rpc, 'pending')

        observation = await observer.observe(make_trial(clock, baseline='0x5'), clock)

        assert observation.elapsed_ms == 100
        assert observation.value == 6

    @pytest.mark.asyncio
    async def test_nonce_observer_queries_sender(self, clock):
        """Test that the submission's sender is queried when no address is given"""
        rpc = ScriptedRpc(counts={'pending': [6]})

        await NonceObserver(rpc, 'pending').observe(make_trial(clock), clock)

        assert rpc.calls == [('count', SENDER, 'pending')]

    @pytest.mark.asyncio
    async def test_nonce_observer_without_address(self, clock):
        """Test that an observer with nothing to query fails instead of timing out"""
        rpc = ScriptedRpc(counts={'pending': [6]})
        trial = make_trial(clock, submission="0xdeadbeef")

        with pytest.raises(ObserverError):
            await NonceObserver(rpc, 'pending').observe(trial, clock)

    def test_invalid_interval(self):
        """Test cadence validation"""
        with pytest.raises(ValueError):
            NonceObserver(ScriptedRpc(), 'pending', interval_ms=0)

    def test_default_names(self):
        """Test strategy naming"""
        rpc = ScriptedRpc()
        assert NonceObserver(rpc, 'pending').name == 'pending-poll'
        assert NonceObserver(rpc, 'latest', name='latest').name == 'latest'
        assert ReceiptObserver(rpc).name == 'receipt-poll'


class TestReceiptObserver:

    @pytest.mark.asyncio
    async def test_detects_receipt(self, clock):
        """Test receipt availability detection"""
        receipt = {'transactionHash': TX_HASH, 'status': '0x1'}
        rpc = ScriptedRpc(receipts=[None, None, receipt])
        observer = ReceiptObserver(rpc)

        observation = await observer.observe(make_trial(clock, baseline=None), clock)

        assert observation.success
        assert observation.elapsed_ms == 200
        assert observation.value == receipt
        assert rpc.calls[0] == ('receipt', TX_HASH, None)

    @pytest.mark.asyncio
    async def test_requires_transaction_hash(self, clock):
        """Test that a trial without a submission cannot be observed"""
        trial = Trial(trial_id=1, baseline=None, start_ms=clock.now_ms(), timeout_ms=100)

        with pytest.raises(ObserverError):
            await ReceiptObserver(ScriptedRpc()).observe(trial, clock)


class TestSubscriptionObserver:

    @pytest.fixture
    def observer(self, channel):
        return SubscriptionObserver('realtime-subscription', channel, channel.realtime)

    @pytest.mark.asyncio
    async def test_first_detection_is_idempotent(self, clock, channel, observer):
        """Test that a second notification does not change the recorded elapsed time"""
        trial = make_trial(clock, baseline=None)
        await observer.attach(trial)

        channel.emit(channel.realtime, {'TxHash': TX_HASH}, received_ms=trial.start_ms + 40)
        channel.emit(channel.realtime, {'TxHash': TX_HASH, 'Receipt': {}}, received_ms=trial.start_ms + 90)
        observation = await observer.observe(trial, clock)

        assert observation.success
        assert observation.elapsed_ms == 40
        assert observation.value == {'TxHash': TX_HASH}
        assert len(observation.extra) == 1

    @pytest.mark.asyncio
    async def test_notification_before_hash_is_known(self, clock, channel, observer):
        """Test that a push arriving while the trigger is still running is kept"""
        trial = make_trial(clock, baseline=None)
        trial.submission = None
        await observer.attach(trial)

        channel.emit(channel.realtime, {'TxHash': TX_HASH.upper().replace('0X', '0x')},
                     received_ms=trial.start_ms + 25)
        trial.submission = make_submission()
        observation = await observer.observe(trial, clock)

        assert observation.success
        assert observation.elapsed_ms == 25

    @pytest.mark.asyncio
    async def test_unrelated_notifications_time_out(self, clock, channel, observer):
        """Test that notifications for other transactions are ignored"""
        trial = make_trial(clock, baseline=None, timeout_ms=800)
        await observer.attach(trial)

        channel.emit(channel.realtime, {'TxHash': '0x' + 'cd' * 32}, received_ms=trial.start_ms + 10)
        observation = await observer.observe(trial, clock)

        assert observation.status is ObservationStatus.TIMEOUT
        assert observation.elapsed_ms == 800

    @pytest.mark.asyncio
    async def test_late_notification_is_ignored(self, clock, channel, observer):
        """Test that a notification received after the deadline is not attributed"""
        trial = make_trial(clock, baseline=None, timeout_ms=500)
        await observer.attach(trial)

        channel.emit(channel.realtime, {'TxHash': TX_HASH}, received_ms=trial.deadline_ms + 1)
        observation = await observer.observe(trial, clock)

        assert observation.status is ObservationStatus.TIMEOUT

    @pytest.mark.asyncio
    async def test_detach_deregisters_callback(self, clock, channel, observer):
        """Test that an expired trial no longer receives notifications"""
        trial = make_trial(clock, baseline=None)
        await observer.attach(trial)
        assert len(channel.listeners) == 1

        await observer.detach(trial)
        channel.emit(channel.realtime, {'TxHash': TX_HASH}, received_ms=trial.start_ms + 5)

        assert channel.listeners == {}
        with pytest.raises(ObserverError):
            await observer.observe(trial, clock)

    @pytest.mark.asyncio
    async def test_timeout_in_harness_deregisters(self, clock, channel, observer):
        """Test that the harness detaches a timed-out streaming observer"""
        harness = LatencyRaceHarness(clock)

        result = await harness.run_trial(None, make_submission, [observer], 1000)

        assert result['realtime-subscription'].status is ObservationStatus.TIMEOUT
        assert result['realtime-subscription'].elapsed_ms == 1000
        assert channel.listeners == {}

    @pytest.mark.asyncio
    async def test_push_during_trigger_in_harness(self, clock, channel, observer):
        """Test a push delivered while the submission is in flight"""
        harness = LatencyRaceHarness(clock)

        async def trigger():
            clock.advance(30)
            channel.emit(channel.realtime, {'TxHash': TX_HASH})
            clock.advance(20)
            return make_submission()

        result = await harness.run_trial(None, trigger, [observer], 8000)

        assert result['realtime-subscription'].success
        assert result['realtime-subscription'].elapsed_ms == 30

    @pytest.mark.asyncio
    async def test_header_before_broadcast_is_ignored(self, clock, channel):
        """Test that a block header received before the trigger completes is not a detection"""
        observer = SubscriptionObserver('newheads-subscription', channel, channel.new_heads,
                                        match_any_new_head)
        harness = LatencyRaceHarness(clock)

        async def trigger():
            clock.advance(10)
            channel.emit(channel.new_heads, {'number': '0x10'})
            clock.advance(300)
            channel.emit(channel.new_heads, {'number': '0x11'}, received_ms=clock.now_ms() + 40)
            return make_submission()

        result = await harness.run_trial(None, trigger, [observer], 8000)

        assert result['newheads-subscription'].success
        assert result['newheads-subscription'].elapsed_ms == 350
        assert result['newheads-subscription'].value == {'number': '0x11'}

    @pytest.mark.asyncio
    async def test_only_early_header_times_out(self, clock, channel):
        """Test that an early block header alone leaves the trial undetected"""
        observer = SubscriptionObserver('newheads-subscription', channel, channel.new_heads,
                                        match_any_new_head)
        harness = LatencyRaceHarness(clock)

        async def trigger():
            clock.advance(10)
            channel.emit(channel.new_heads, {'number': '0x10'})
            clock.advance(300)
            return make_submission()

        result = await harness.run_trial(None, trigger, [observer], 1000)

        assert result['newheads-subscription'].status is ObservationStatus.TIMEOUT
        assert result['newheads-subscription'].elapsed_ms == 1000

    @pytest.mark.asyncio
    async def test_trials_do_not_share_detections(self, clock, channel, observer):
        """Test that callbacks are keyed per trial"""
        first = make_trial(clock, baseline=None, trial_id=1)
        second = make_trial(clock, baseline=None, trial_id=2,
                            submission=make_submission(tx_hash='0x' + 'ef' * 32))
        await observer.attach(first)
        await observer.attach(second)

        channel.emit(channel.realtime, {'TxHash': TX_HASH}, received_ms=first.start_ms + 15)

        assert (await observer.observe(first, clock)).elapsed_ms == 15
        assert (await observer.observe(second, clock)).status is ObservationStatus.TIMEOUT


class TestMatchers:

    def test_match_transaction_hash(self, clock):
        """Test realtime payload matching"""
        trial = make_trial(clock)

        assert match_transaction_hash({'TxHash': TX_HASH}, trial)
        assert match_transaction_hash({'hash': TX_HASH.upper().replace('0X', '0x')}, trial)
        assert match_transaction_hash({'Receipt': {'transactionHash': TX_HASH}}, trial)
        assert not match_transaction_hash({'TxHash': '0x00'}, trial)
        assert not match_transaction_hash("0xabc", trial)

    def test_match_transaction_hash_without_submission(self, clock):
        """Test that nothing matches before the hash is known"""
        trial = Trial(trial_id=1, baseline=None, start_ms=0, timeout_ms=100)

        assert not match_transaction_hash({'TxHash': TX_HASH}, trial)

    def test_match_any_new_head(self, clock):
        """Test block header matching"""
        trial = make_trial(clock)

        assert match_any_new_head({'number': '0x10', 'hash': '0x01'}, trial)
        assert not match_any_new_head({'TxHash': TX_HASH}, trial)
