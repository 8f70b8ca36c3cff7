"""Prometheus metrics for the harness."""

from prometheus_client import Counter, Gauge

api_requests = Counter(
    'safevote_bots_api_requests_total',
    'Backend requests issued by the harness',
    ['method', 'status']
)

elections_created = Counter(
    'safevote_bots_elections_total',
    'Elections handled by creator bots',
    ['status']
)

vote_attempts = Counter(
    'safevote_bots_vote_attempts_total',
    'Vote attempts by outcome',
    ['outcome']
)

security_probes = Counter(
    'safevote_bots_security_probes_total',
    'Ineligible voter probes by result',
    ['result', 'severity']
)

funding_transfers = Counter(
    'safevote_bots_funding_transfers_total',
    'Funding transfers by status',
    ['status']
)

gas_used = Counter(
    'safevote_bots_gas_used_total',
    'Gas consumed by confirmed transactions',
    ['phase']
)

operations_in_flight = Gauge(
    'safevote_bots_operations_in_flight',
    'Agent operations currently running'
)


def status_class(status_code) -> str:
    """'2xx', '4xx', ... or 'error' when no response was received."""
    if status_code is None:
        return 'error'
    return f"{status_code // 100}xx"
