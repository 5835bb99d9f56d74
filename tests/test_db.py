from prism_driver.db import SQLITE_BUSY_TIMEOUT_SEC, engine_options


def test_sqlite_store_shares_connections_across_threads():
    options = engine_options("sqlite:///./prism_driver.db")
    assert options["connect_args"] == {
        "check_same_thread": False,
        "timeout": SQLITE_BUSY_TIMEOUT_SEC,
    }


def test_server_databases_use_driver_defaults():
    assert engine_options("postgresql://driver@db/prism") == {}
