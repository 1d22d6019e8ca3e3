from __future__ import annotations

from statemachine import State, StateMachine


class ConnectionFSM(StateMachine):
    """Lifecycle of one realtime connection.

    connecting -> joined -> disconnected. Joining again while joined (another
    room, or a rename) is a self-transition. Once disconnected nothing else is
    accepted.
    """

    connecting = State("connecting", value="connecting", initial=True)
    joined = State("joined", value="joined")
    disconnected = State("disconnected", value="disconnected", final=True)

    join = connecting.to(joined) | joined.to.itself()
    disconnect = connecting.to(disconnected) | joined.to(disconnected)

    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        super().__init__()

    @property
    def is_joined(self) -> bool:
        return self.joined.is_active

    @property
    def is_closed(self) -> bool:
        return self.disconnected.is_active
