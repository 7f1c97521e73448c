import pytest

from prc.errors import LoadBalancerError, TrafficSwitchError
from prc.gateway import TrafficTable
from prc.runtime import RuntimeState


@pytest.fixture
def table():
    return TrafficTable(RuntimeState())


def test_no_target_before_any_traffic(table):
    assert table.get_current_target("billing") is None
    assert table.get_traffic_distribution("billing") == {"billing-blue": 0, "billing-green": 0}


def test_weights_always_sum_to_100(table):
    for pct in (10, 25, 50, 75, 100):
        table.set_traffic_percentage("billing", "billing-green", pct)
        dist = table.get_traffic_distribution("billing")
        assert dist["billing-green"] == pct
        assert sum(dist.values()) == 100


def test_current_target_needs_a_majority(table):
    table.set_traffic_percentage("billing", "billing-green", 50)
    assert table.get_current_target("billing") == "billing-blue"
    table.set_traffic_percentage("billing", "billing-green", 75)
    assert table.get_current_target("billing") == "billing-green"


def test_switch_and_revert(table):
    res = table.switch_traffic("billing", None, "billing-green")
    assert res["status"] == "success"
    assert table.get_current_target("billing") == "billing-green"

    assert table.revert_traffic("billing", to="billing-blue") == {"status": "success", "reverted_to": "billing-blue"}
    assert table.get_traffic_distribution("billing") == {"billing-blue": 100, "billing-green": 0}


def test_services_are_independent(table):
    table.switch_traffic_instant("billing", None, "billing-green")
    assert table.get_current_target("ledger") is None


def test_out_of_range_percentage(table):
    with pytest.raises(TrafficSwitchError):
        table.set_traffic_percentage("billing", "billing-green", 120)
    assert table.get_current_target("billing") is None


def test_foreign_environment_rejected(table):
    with pytest.raises(LoadBalancerError):
        table.set_traffic_percentage("billing", "ledger-green", 10)
    with pytest.raises(LoadBalancerError):
        table.switch_traffic("billing", "billing-purple", "billing-green")
