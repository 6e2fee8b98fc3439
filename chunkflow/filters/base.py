# chunkflow/filters/base.py
from abc import ABC


class UnitFilter(ABC):
    def on_admission(self, admission_context):
        pass  # Default implementation admits everything

    def on_state_election(self, elect_state_context):
        pass  # Default implementation does nothing
