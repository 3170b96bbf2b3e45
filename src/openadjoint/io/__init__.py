"""Input/output of states and optimization histories."""

from openadjoint.io.export import read_history_csv, write_history_csv, write_state

__all__ = ["write_state", "write_history_csv", "read_history_csv"]
