"""Unit tests for the Topology State Reader."""
import pytest

from replctl.errors import AuthError, ParseError
from replctl.models import LinkState
from replctl.status import TopologyReader, classify_link, parse_replica_status, parse_status_fields

from .conftest import render_status

LEGACY_STATUS = """\
*************************** 1. row ***************************
               Slave_IO_State: Waiting for master to send event
                  Master_Host: mysql-primary
                  Master_User: repl
                  Master_Port: 3306
             Slave_IO_Running: Yes
            Slave_SQL_Running: Yes
                   Last_Error:
        Seconds_Behind_Master: 4
                Last_IO_Error:
               Last_SQL_Error:
           Executed_Gtid_Set: 3e11fa47-71ca-11e1-9e33-c80aa9429562:1-5
"""

WRAPPED_GTID_STATUS = """\
*************************** 1. row ***************************
                  Source_Host: mysql-primary
                  Source_Port: 3306
           Replica_IO_Running: Yes
          Replica_SQL_Running: Yes
        Seconds_Behind_Source: 0
           Executed_Gtid_Set: 3e11fa47-71ca-11e1-9e33-c80aa9429562:1-5,
8a94f357-aab4-11df-86ab-c80aa9429562:1-9
"""


class TestParsing:
    def test_streaming(self):
        link = parse_replica_status(render_status(executed="abc:1-3", lag="2"), "replica")
        assert link.state == LinkState.STREAMING
        assert link.source_host == "mysql-primary"
        assert link.source_port == 3306
        assert link.seconds_behind == 2
        assert link.position == "abc:1-3"
        assert link.last_error == ""

    def test_legacy_field_names(self):
        link = parse_replica_status(LEGACY_STATUS, "replica")
        assert link.is_streaming
        assert link.seconds_behind == 4
        assert link.source_host == "mysql-primary"

    def test_wrapped_gtid_set(self):
        link = parse_replica_status(WRAPPED_GTID_STATUS, "replica")
        assert link.position == (
            "3e11fa47-71ca-11e1-9e33-c80aa9429562:1-5,8a94f357-aab4-11df-86ab-c80aa9429562:1-9"
        )

    def test_empty_output_means_no_link(self):
        assert parse_replica_status("", "replica") is None
        assert parse_replica_status("\n  \n", "replica") is None

    def test_io_error(self):
        text = render_status(io="Connecting", sql="Yes",
                             io_error="error connecting to source 'repl@mysql-primary:3306'")
        link = parse_replica_status(text, "replica")
        assert link.state == LinkState.ERROR
        assert "error connecting" in link.last_error
        assert link.seconds_behind is None

    def test_sql_error(self):
        text = render_status(io="Yes", sql="No", sql_error="Error 'Duplicate entry' on query")
        assert parse_replica_status(text, "replica").state == LinkState.ERROR

    def test_only_first_row_is_read(self):
        text = render_status(source_host="a") + render_status(source_host="b").replace("1. row", "2. row")
        assert parse_replica_status(text, "replica").source_host == "a"

    def test_unrecognized_output(self):
        with pytest.raises(ParseError):
            parse_replica_status("+------+\n| what |\n+------+\n", "replica")

    def test_missing_thread_fields(self):
        with pytest.raises(ParseError):
            parse_replica_status("Source_Host: x\nSource_Port: 3306\n", "replica")

    def test_fields_split_on_first_colon(self):
        fields = parse_status_fields("   Last_IO_Error: error connecting to source 'repl@h:3306'\n")
        assert fields["Last_IO_Error"] == "error connecting to source 'repl@h:3306'"


@pytest.mark.parametrize("io, sql, error, expected", [
    ("Yes", "Yes", "", LinkState.STREAMING),
    ("Connecting", "Yes", "", LinkState.CONNECTING),
    ("Connecting", "Yes", "auth failed", LinkState.ERROR),
    ("No", "No", "", LinkState.DISCONNECTED),
    ("No", "Yes", "", LinkState.DISCONNECTED),
])
def test_classify_link(io, sql, error, expected):
    assert classify_link(io, sql, error) == expected


class TestObserve:
    def test_fresh_topology(self, config, fake_admin):
        state = TopologyReader(config, fake_admin).observe()
        assert state.primary.reachable
        assert state.primary.databases == ("app",)
        assert state.primary.read_only is False
        assert state.replica.read_only is True
        assert state.link is None

    def test_unreachable_node(self, config, fake_admin):
        fake_admin.down["replica"] = -1
        state = TopologyReader(config, fake_admin).observe()
        assert state.primary.reachable
        assert not state.replica.reachable
        assert "2003" in state.replica.error

    def test_unparseable_status_is_degraded(self, config, fake_admin, monkeypatch):
        fake_admin.arm_directly()
        monkeypatch.setattr(fake_admin, "replica_status", lambda node: "garbage without fields\n")
        state = TopologyReader(config, fake_admin).observe()
        assert state.replica.reachable
        assert state.replica.degraded
        assert state.link is None

    def test_observe_never_mutates(self, config, fake_admin):
        fake_admin.arm_directly()
        TopologyReader(config, fake_admin).observe()
        assert fake_admin.mutations() == []

    def test_rejected_credentials_are_reachable_but_degraded(self, config, fake_admin):
        fake_admin.failures["list_databases"] = AuthError(
            "primary", "ERROR 1045 (28000): Access denied for user 'root'@'172.18.0.1' (using password: YES)"
        )
        state = TopologyReader(config, fake_admin).observe()
        assert state.primary.reachable
        assert state.primary.degraded
        assert "1045" in state.primary.error
        assert state.primary.databases == ()
