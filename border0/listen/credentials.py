"""
Control Stream Credentials

Per-request authentication metadata for the control-plane gRPC stream.
The same object is used two ways:

- as a grpc.AuthMetadataPlugin, wrapped in grpc.metadata_call_credentials
  on secure channels
- as plain call metadata on insecure channels (gRPC refuses to attach call
  credentials to a channel without transport security)
"""

import grpc

METADATA_KEY_TOKEN = "token"
METADATA_KEY_CONNECTOR_ID = "connector_id"


class ControlStreamCredentials(grpc.AuthMetadataPlugin):
    """Authentication for the connector control plane.

    Only keyword options are accepted; anything else is a TypeError.
    """

    def __init__(
        self,
        *,
        token: str = "",
        connector_id: str = "",
        insecure_transport: bool = False,
    ):
        self.token = token
        self.connector_id = connector_id
        self.insecure_transport = insecure_transport

    def metadata(self) -> dict:
        """Request metadata, omitting empty values."""
        md = {}
        if self.token:
            md[METADATA_KEY_TOKEN] = self.token
        if self.connector_id:
            md[METADATA_KEY_CONNECTOR_ID] = self.connector_id
        return md

    def metadata_pairs(self) -> tuple:
        """Metadata in the (key, value) tuple form gRPC calls take."""
        return tuple(self.metadata().items())

    def requires_transport_security(self) -> bool:
        return not self.insecure_transport

    def with_connector_id(self, connector_id: str) -> "ControlStreamCredentials":
        """Copy of these credentials bound to a connector."""
        return ControlStreamCredentials(
            token=self.token,
            connector_id=connector_id,
            insecure_transport=self.insecure_transport,
        )

    def __call__(self, context, callback):
        # grpc.AuthMetadataPlugin hook, invoked on every call
        callback(self.metadata_pairs(), None)

    def __repr__(self):
        return (
            f"ControlStreamCredentials(token={'***' if self.token else ''!r}, "
            f"connector_id={self.connector_id!r}, "
            f"insecure_transport={self.insecure_transport})"
        )
