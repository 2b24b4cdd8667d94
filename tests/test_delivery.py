"""Tests for the verify-then-send exchange with the collector API."""

import printwatch_collector as pwc

VERIFY = '/central/verifyimpression'
INGEST = '/central/receptprintreq'


def client(**kwargs):
    return pwc.CollectorClient('http://collector.test/', **kwargs)


def test_urls():
    c = client()
    assert c.verify_url == 'http://collector.test/central/verifyimpression'
    assert c.ingest_url == 'http://collector.test/central/receptprintreq'


def test_new_event_is_verified_then_sent(collector_api, event):
    result = client().deliver(event)
    assert result == pwc.DeliveryResult(pwc.DELIVERED)
    assert [call[0] for call in collector_api.calls] == [
        'http://collector.test' + VERIFY,
        'http://collector.test' + INGEST,
    ]
    assert collector_api.stored == [event.to_json()]


def test_same_event_twice_is_sent_once(collector_api, event):
    c = client()
    assert c.deliver(event).status == pwc.DELIVERED
    assert c.deliver(event).status == pwc.ALREADY_EXISTS
    assert len(collector_api.calls_to(INGEST)) == 1
    assert len(collector_api.calls_to(VERIFY)) == 2


def test_verify_error_status_fails_without_sending(collector_api, event):
    collector_api.verify_status = 500
    collector_api.verify_text = 'internal error'
    result = client().deliver(event)
    assert result.status == pwc.FAILED
    assert '500' in result.reason
    assert not result.ok
    assert collector_api.calls_to(INGEST) == []


def test_connection_error_fails(collector_api, event):
    collector_api.down = True
    result = client().deliver(event)
    assert result.status == pwc.FAILED
    assert collector_api.calls_to(INGEST) == []


def test_unparseable_verify_body_assumes_absent(collector_api, event):
    collector_api.verify_text = '<html>ok</html>'
    result = client().deliver(event)
    assert result.status == pwc.DELIVERED
    assert len(collector_api.calls_to(INGEST)) == 1


def test_only_exact_true_string_means_exists(collector_api, event):
    c = client()
    for body in ('{"status": true}', '{"status": "TRUE"}', '{"status": "false"}', '["true"]', '{}'):
        collector_api.verify_text = body
        assert c.deliver(event).status == pwc.DELIVERED
    collector_api.verify_text = '{"status": "true"}'
    assert c.deliver(event).status == pwc.ALREADY_EXISTS


def test_ingest_accepts_200_and_201(collector_api, event):
    for status in (200, 201):
        collector_api.ingest_status = status
        collector_api.stored.clear()
        assert client().deliver(event).status == pwc.DELIVERED


def test_ingest_error_status_fails(collector_api, event):
    collector_api.ingest_status = 400
    result = client().deliver(event)
    assert result.status == pwc.FAILED
    assert '400' in result.reason


def test_timeouts(collector_api, event):
    client(timeout=42).deliver(event)
    verify_kwargs = collector_api.calls_to(VERIFY)[0][2]
    ingest_kwargs = collector_api.calls_to(INGEST)[0][2]
    assert verify_kwargs['timeout'] == pwc.VERIFY_TIMEOUT
    assert ingest_kwargs['timeout'] == 42


def test_event_is_not_mutated(collector_api, event):
    before = tuple(event)
    client().deliver(event)
    assert tuple(event) == before


def test_tls_options_are_passed(collector_api, event):
    tls = {'ca_cert': '/etc/ssl/collector-ca.pem', 'client_cert': 'c.pem', 'client_key': 'c.key'}
    client(tls_opts=tls).deliver(event)
    kwargs = collector_api.calls_to(VERIFY)[0][2]
    assert kwargs['verify'] == '/etc/ssl/collector-ca.pem'
    assert kwargs['cert'] == ('c.pem', 'c.key')


def test_test_mode_does_not_post(collector_api, event):
    result = client(test_mode=True).deliver(event)
    assert result.status == pwc.DELIVERED
    assert collector_api.calls == []


class TestVerifyFromTlsOpts:
    def test_default_verifies(self):
        assert pwc.get_verify_from_tls_opts({}) is True

    def test_false_string_disables(self):
        assert pwc.get_verify_from_tls_opts({'ca_cert': 'False'}) is False

    def test_ca_bundle_path(self):
        assert pwc.get_verify_from_tls_opts({'ca_cert': '/ca.pem'}) == '/ca.pem'
