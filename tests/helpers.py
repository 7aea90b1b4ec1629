from prometheus_client import REGISTRY


def sample(name, labels=None):
    """Current value of a prometheus sample, 0.0 if never observed."""
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


def assert_stock_invariant(ticket_type):
    assert ticket_type.available_quantity >= 0
    assert (
        ticket_type.available_quantity + ticket_type.reserved_quantity + ticket_type.sold_quantity
        == ticket_type.total_quantity
    )
