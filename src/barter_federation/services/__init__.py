from .audit import AuditLogger
from .directory import (
    ChatDelivery,
    DeliveryReceipt,
    InMemoryChatDelivery,
    InMemoryPostingDirectory,
    InMemoryUserDirectory,
    PostingDirectory,
    RelayedMessage,
    UserDirectory,
)
from .handshake import HandshakeEngine, HandshakeSecurityError
from .identity import FederationNotInitializedError, IdentityService, Signer
from .inbound import InboundQueryService, QueryResult
from .outbound_queries import FederatedSearch
from .relay import MessageRelay, RelayResult, parse_federated_address
from .remote_client import RemoteFederationClient, RemoteServerError
from .trust_admin import TrustAdministration
from .verifier import RejectionReason, SignedRequestVerifier, VerificationResult

__all__ = [
    "AuditLogger",
    "ChatDelivery",
    "DeliveryReceipt",
    "FederatedSearch",
    "FederationNotInitializedError",
    "HandshakeEngine",
    "HandshakeSecurityError",
    "IdentityService",
    "InMemoryChatDelivery",
    "InMemoryPostingDirectory",
    "InMemoryUserDirectory",
    "InboundQueryService",
    "MessageRelay",
    "PostingDirectory",
    "QueryResult",
    "RejectionReason",
    "RelayResult",
    "RelayedMessage",
    "RemoteFederationClient",
    "RemoteServerError",
    "SignedRequestVerifier",
    "Signer",
    "TrustAdministration",
    "UserDirectory",
    "VerificationResult",
    "parse_federated_address",
]
