from localcluster.core.actor import ActorCell, CellContext
from localcluster.core.behavior import Behavior, Signal
from localcluster.core.context import ActorContext, System
from localcluster.core.events import (
    ActorStarted,
    ActorStopped,
    DeadLetter,
    UnhandledMessage,
)
from localcluster.core.event_stream import (
    EventStreamMsg,
    Publish,
    Subscribe,
    Unsubscribe,
    event_stream_actor,
)
from localcluster.core.mailbox import Mailbox
from localcluster.core.messages import Terminated
from localcluster.core.ref import ActorId, ActorRef, LocalActorRef
from localcluster.core.system import ActorSystem

__all__ = [
    "ActorCell",
    "ActorContext",
    "ActorId",
    "ActorRef",
    "ActorStarted",
    "ActorStopped",
    "ActorSystem",
    "Behavior",
    "CellContext",
    "DeadLetter",
    "EventStreamMsg",
    "LocalActorRef",
    "Mailbox",
    "Publish",
    "Signal",
    "Subscribe",
    "System",
    "Terminated",
    "UnhandledMessage",
    "Unsubscribe",
    "event_stream_actor",
]
