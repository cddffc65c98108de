"""Tests for error types and CLI error handling."""

from stagecraft.core.errors import (
    BindingUnresolved,
    ConfigurationError,
    CycleDetected,
    ExitCode,
    NodeError,
    PartialFailure,
    ProtectedResource,
    StagecraftError,
    TimedOut,
    format_error_message,
    main_with_error_handling,
)


class TestErrorMessages:
    """Tests for node-scoped error messages."""

    def test_node_error_names_kind_and_id(self):
        error = NodeError("gke", "Cluster", "quota exceeded")
        assert error.message == "[Cluster gke] quota exceeded"
        assert error.details["node_id"] == "gke"

    def test_cycle_path(self):
        error = CycleDetected(["a", "b"])
        assert "a -> b -> a" in error.message
        assert error.exit_code == ExitCode.PLAN_ERROR

    def test_binding_unresolved_lists_missing(self):
        error = BindingUnresolved("ns", "Namespace", "cluster", ["${gke.endpoint}"])
        assert "missing ${gke.endpoint}" in error.message
        assert error.missing == ["${gke.endpoint}"]

    def test_format_error_message_includes_details(self):
        error = ConfigurationError("bad file", {"path": "x.yaml"})
        assert format_error_message(error) == "bad file (path=x.yaml)"


class TestPartialFailure:
    """Exit code aggregation across failed nodes."""

    def test_node_failure_dominates(self):
        failures = [
            ProtectedResource("sql", "DatabaseInstance"),
            NodeError("gke", "Cluster", "boom"),
        ]
        error = PartialFailure(["vpc"], failures)
        assert error.exit_code == ExitCode.NODE_FAILED
        assert error.failed_node_id == "sql"
        assert error.completed_node_ids == ["vpc"]

    def test_timeout_over_blocked(self):
        failures = [
            ProtectedResource("sql", "DatabaseInstance"),
            TimedOut("gke", "Cluster", "readiness", 10.0, 10.0),
        ]
        assert PartialFailure([], failures).exit_code == ExitCode.TIMED_OUT

    def test_only_blocked(self):
        error = PartialFailure([], [ProtectedResource("sql", "DatabaseInstance")])
        assert error.exit_code == ExitCode.BLOCKED
        assert error.cause.node_id == "sql"


class TestMainWithErrorHandling:
    """Tests for the CLI decorator."""

    def test_success_passthrough(self):
        @main_with_error_handling()
        def command():
            return 0

        assert command() == 0

    def test_stagecraft_error_exit_code(self):
        @main_with_error_handling(log_errors=False)
        def command():
            raise ConfigurationError("bad config")

        assert command() == ExitCode.CONFIG_ERROR

    def test_partial_failure_exit_code(self):
        @main_with_error_handling(log_errors=False)
        def command():
            raise PartialFailure([], [TimedOut("gke", "Cluster", "readiness", 5.0, 5.0)])

        assert command() == ExitCode.TIMED_OUT

    def test_keyboard_interrupt(self):
        @main_with_error_handling(log_errors=False)
        def command():
            raise KeyboardInterrupt

        assert command() == 130

    def test_unexpected_error(self):
        @main_with_error_handling(log_errors=False)
        def command():
            raise RuntimeError("surprise")

        assert command() == ExitCode.UNKNOWN_ERROR

    def test_base_error_defaults_to_unknown(self):
        assert StagecraftError("x").exit_code == ExitCode.UNKNOWN_ERROR
