"""
immustreams - immudb verified-store transport for multi-party channels.

This package lets a link-addressed channel protocol keep its messages in
an immudb instance reached over HTTP:
- StoreSession for the authenticated immudb REST session
- ImmuDBTransport implementing the engine's send/receive contract
- Codec mapping links to store keys and payloads to base64 text
- ChannelOrchestrator driving a full channel lifecycle
- A plaintext reference engine and an in-memory store for local runs

Example:
    >>> from sdk.immustreams import ImmuDBTransport, PLAIN_ENGINE, StoreSession
    >>>
    >>> async with StoreSession("127.0.0.1:3323", "defaultdb") as session:
    ...     transport = ImmuDBTransport(session)
    ...     author = PLAIN_ENGINE.new_author("seed", ChannelType.MULTI_BRANCH, transport)
    ...     await author.send_announce()

Invariants:
    - Store keys are the engine's message index, never rehashed
    - Each role owns its own session and transport
    - Transport errors reach the caller unchanged

Version: 0.1.0
"""

__version__ = "0.1.0"

from .channel import (
    ChannelEngine,
    ChannelType,
    Message,
    MessageContent,
    Transport,
    UnwrappedMessage,
)
from .codec import decode, encode, link_to_key
from .config import Settings
from .errors import (
    AuthError,
    ChannelError,
    ConflictError,
    ConnectionError,
    DecodeError,
    NotFoundError,
    ProtocolMismatchError,
    ReceiveError,
    SendError,
    StateTransitionError,
    StreamsError,
    TimeoutError,
)
from .memory import InMemoryImmuDB
from .orchestrator import AuthorState, ChannelOrchestrator, RunReport
from .plain import PLAIN_ENGINE, PlainAuthor, PlainLink, PlainSubscriber
from .session import Credentials, StoreSession
from .transport import ImmuDBTransport

__all__ = [
    # Version
    "__version__",
    # Contract
    "ChannelEngine",
    "ChannelType",
    "Message",
    "MessageContent",
    "Transport",
    "UnwrappedMessage",
    # Codec
    "link_to_key",
    "encode",
    "decode",
    # Store
    "Credentials",
    "StoreSession",
    "ImmuDBTransport",
    "InMemoryImmuDB",
    # Driver
    "Settings",
    "ChannelOrchestrator",
    "AuthorState",
    "RunReport",
    # Reference engine
    "PLAIN_ENGINE",
    "PlainAuthor",
    "PlainSubscriber",
    "PlainLink",
    # Errors
    "StreamsError",
    "AuthError",
    "ConnectionError",
    "TimeoutError",
    "SendError",
    "ConflictError",
    "ReceiveError",
    "NotFoundError",
    "DecodeError",
    "ProtocolMismatchError",
    "ChannelError",
    "StateTransitionError",
]
