from .federation import (
    ApiModel,
    AuditLogEntryInfo,
    ConsentResponse,
    FederatedAttribute,
    FederatedLocation,
    FederatedPostingData,
    FederatedServerInfo,
    FederatedServersListResponse,
    FederatedUserInfo,
    FederatedUserProfile,
    FederationApiResponse,
    HandshakeRequest,
    HandshakeResponse,
    InitializeServerRequest,
    InitializeServerResponse,
    InitiateHandshakeRequest,
    InitiateHandshakeResponse,
    MessageRelayRequest,
    MessageRelayResponse,
    PostingSearchResponse,
    ProfileSearchResponse,
    RemoteConsentPayload,
    ScopeConsentRequest,
    ServerInfo,
    TrustConsentRequest,
    UpdateScopesRequest,
    UpdateTrustLevelRequest,
    UserSearchResponse,
    UserSyncRequest,
    UserSyncResponse,
)

__all__ = [
    "ApiModel",
    "AuditLogEntryInfo",
    "ConsentResponse",
    "FederatedAttribute",
    "FederatedLocation",
    "FederatedPostingData",
    "FederatedServerInfo",
    "FederatedServersListResponse",
    "FederatedUserInfo",
    "FederatedUserProfile",
    "FederationApiResponse",
    "HandshakeRequest",
    "HandshakeResponse",
    "InitializeServerRequest",
    "InitializeServerResponse",
    "InitiateHandshakeRequest",
    "InitiateHandshakeResponse",
    "MessageRelayRequest",
    "MessageRelayResponse",
    "PostingSearchResponse",
    "ProfileSearchResponse",
    "RemoteConsentPayload",
    "ScopeConsentRequest",
    "ServerInfo",
    "TrustConsentRequest",
    "UpdateScopesRequest",
    "UpdateTrustLevelRequest",
    "UserSearchResponse",
    "UserSyncRequest",
    "UserSyncResponse",
]
