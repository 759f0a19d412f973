from sqlalchemy import exc as sa_exc

from database import translate_store_error
from errors import StoreConnectionError, StoreTimeoutError
from main import _ledger_error_response


class _DriverError(Exception):
    def __init__(self, message: str, sqlstate=None):
        super().__init__(message)
        self.sqlstate = sqlstate


def test_query_canceled_sqlstate_is_a_timeout():
    error = sa_exc.OperationalError(
        "SELECT 1", {}, _DriverError("canceling statement due to user request", "57014")
    )

    assert isinstance(translate_store_error(error), StoreTimeoutError)


def test_statement_timeout_message_is_a_timeout():
    error = sa_exc.OperationalError(
        "SELECT 1", {}, _DriverError("canceling statement due to statement timeout")
    )

    assert isinstance(translate_store_error(error), StoreTimeoutError)


def test_pool_checkout_timeout_is_a_timeout():
    assert isinstance(translate_store_error(sa_exc.TimeoutError()), StoreTimeoutError)


def test_invalidated_connection_is_a_connection_error():
    error = sa_exc.OperationalError(
        "SELECT 1", {}, _DriverError("server closed the connection"), connection_invalidated=True
    )

    assert isinstance(translate_store_error(error), StoreConnectionError)


def test_other_store_errors_are_not_translated():
    assert translate_store_error(sa_exc.OperationalError("SELECT 1", {}, _DriverError("locked"))) is None
    assert translate_store_error(sa_exc.IntegrityError("INSERT", {}, _DriverError("dup"))) is None
    assert translate_store_error(ValueError("nope")) is None


def test_store_errors_map_to_gateway_statuses():
    timeout = _ledger_error_response(StoreTimeoutError("slow"))
    lost = _ledger_error_response(StoreConnectionError("gone"))

    assert timeout.status_code == 504
    assert lost.status_code == 503
