import datetime
import logging

from kubernetes import client
from kubernetes.client.rest import ApiException

from vdbop.utils.context import Context

logger = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

# Event reasons
NODE_RESTART_STARTED = "NodeRestartStarted"
NODE_RESTART_SUCCEEDED = "NodeRestartSucceeded"
CLUSTER_RESTART_STARTED = "ClusterRestartStarted"
CLUSTER_RESTART_SUCCEEDED = "ClusterRestartSucceeded"
REVIVE_DB_START = "ReviveDBStart"
REVIVE_DB_SUCCEEDED = "ReviveDBSucceeded"
REVIVE_DB_FAILED = "ReviveDBFailed"
REVIVE_ORDER_BAD = "ReviveOrderBad"
HTTP_SERVER_NOT_SETUP = "HTTPServerNotSetup"

COMPONENT = "verticadb-operator"


class EventRecorder:
    """Records core/v1 Events against a VerticaDB.

    Events are best effort. A failure to write one is logged and dropped.
    """

    def __init__(self, kubectl, component: str = COMPONENT):
        self.kubectl = kubectl
        self.component = component

    def event(self, vdb, event_type: str, reason: str, message: str):
        logger.info(f"Event {event_type}/{reason} for {vdb.namespace}/{vdb.name}: {message}")
        now = datetime.datetime.now(datetime.timezone.utc)
        body = client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{vdb.name}.", namespace=vdb.namespace),
            involved_object=client.V1ObjectReference(
                api_version=vdb.api_version,
                kind=vdb.kind,
                name=vdb.name,
                namespace=vdb.namespace,
                uid=vdb.uid,
                resource_version=vdb.metadata.resource_version,
            ),
            reason=reason,
            message=message,
            type=event_type,
            source=client.V1EventSource(component=self.component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self.kubectl.create_event(Context.background(), vdb.namespace, body)
        except ApiException as e:
            logger.warning(f"Failed to record event {reason} for {vdb.namespace}/{vdb.name}: {e.reason}")
