import datetime
import logging
from typing import Callable

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from vdbop.api import vdb as vapi
from vdbop.api.vdb import VerticaDB, VerticaDBCondition
from vdbop.names import NamespacedName
from vdbop.retry import is_not_found, retry_on_conflict
from vdbop.utils.context import Context

logger = logging.getLogger(__name__)


def load_client_config(context: str | None = None):
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config(context=context)


class KubeCtl:
    """Thin wrapper over the Kubernetes API used by the reconcilers.

    Getters return None when the object does not exist. Every other
    ApiException is raised to the caller.
    """

    def __init__(self, context: str | None = None, api_client: client.ApiClient | None = None):
        if api_client is None:
            load_client_config(context)
        self.core_v1_api = client.CoreV1Api(api_client)
        self.apps_v1_api = client.AppsV1Api(api_client)
        self.custom_api = client.CustomObjectsApi(api_client)

    def get_pod(self, ctx: Context, nm: NamespacedName) -> client.V1Pod | None:
        ctx.raise_if_done()
        try:
            return self.core_v1_api.read_namespaced_pod(name=nm.name, namespace=nm.namespace)
        except ApiException as e:
            if is_not_found(e):
                return None
            raise

    def delete_pod(self, ctx: Context, nm: NamespacedName):
        ctx.raise_if_done()
        self.core_v1_api.delete_namespaced_pod(name=nm.name, namespace=nm.namespace)

    def get_statefulset(self, ctx: Context, nm: NamespacedName) -> client.V1StatefulSet | None:
        ctx.raise_if_done()
        try:
            return self.apps_v1_api.read_namespaced_stateful_set(name=nm.name, namespace=nm.namespace)
        except ApiException as e:
            if is_not_found(e):
                return None
            raise

    def list_statefulsets(self, ctx: Context, namespace: str, label_selector: str) -> list[client.V1StatefulSet]:
        ctx.raise_if_done()
        return self.apps_v1_api.list_namespaced_stateful_set(namespace, label_selector=label_selector).items

    def get_vdb(self, ctx: Context, nm: NamespacedName) -> VerticaDB | None:
        ctx.raise_if_done()
        try:
            obj = self.custom_api.get_namespaced_custom_object(
                vapi.GROUP, vapi.VERSION, nm.namespace, vapi.PLURAL, nm.name
            )
        except ApiException as e:
            if is_not_found(e):
                return None
            raise
        return VerticaDB.from_dict(obj)

    def replace_vdb(self, ctx: Context, vdb: VerticaDB) -> VerticaDB:
        """Write the spec back. A stale resourceVersion surfaces as a 409 ApiException."""
        ctx.raise_if_done()
        obj = self.custom_api.replace_namespaced_custom_object(
            vapi.GROUP, vapi.VERSION, vdb.namespace, vapi.PLURAL, vdb.name, vdb.to_dict()
        )
        return VerticaDB.from_dict(obj)

    def replace_vdb_status(self, ctx: Context, vdb: VerticaDB) -> VerticaDB:
        ctx.raise_if_done()
        obj = self.custom_api.replace_namespaced_custom_object_status(
            vapi.GROUP, vapi.VERSION, vdb.namespace, vapi.PLURAL, vdb.name, vdb.to_dict()
        )
        return VerticaDB.from_dict(obj)

    def update_vdb(self, ctx: Context, nm: NamespacedName, transform: Callable[[VerticaDB], bool]) -> bool:
        """Re-fetch, transform and replace the VerticaDB, retrying on conflict.

        transform mutates the freshly fetched object and returns whether it
        changed anything. Returns True if an update was written.
        """
        updated = False

        def attempt():
            nonlocal updated
            updated = False
            vdb = self.get_vdb(ctx, nm)
            if vdb is None:
                logger.info(f"VerticaDB {nm} not found. Ignoring since object must be deleted")
                return
            if not transform(vdb):
                return
            logger.info(f"Updating VerticaDB {nm}")
            self.replace_vdb(ctx, vdb)
            updated = True

        retry_on_conflict(attempt)
        return updated

    def update_vdb_condition(self, ctx: Context, vdb: VerticaDB, cond: VerticaDBCondition):
        """Set a status condition on the VerticaDB, retrying on conflict.

        The passed in vdb is updated in place so the rest of the pass sees it.
        """
        if cond.last_transition_time is None:
            now = datetime.datetime.now(datetime.timezone.utc)
            cond = cond.model_copy(update={"last_transition_time": now.strftime("%Y-%m-%dT%H:%M:%SZ")})

        def attempt():
            latest = self.get_vdb(ctx, vdb.extract_namespaced_name())
            if latest is None:
                return
            if latest.set_condition(cond):
                latest = self.replace_vdb_status(ctx, latest)
            vdb.status.conditions = latest.status.conditions

        retry_on_conflict(attempt)

    def read_secret(self, ctx: Context, nm: NamespacedName) -> dict[str, str] | None:
        """Return the secret's data (still base64 encoded) or None if it is missing."""
        ctx.raise_if_done()
        try:
            secret = self.core_v1_api.read_namespaced_secret(name=nm.name, namespace=nm.namespace)
        except ApiException as e:
            if is_not_found(e):
                return None
            raise
        return secret.data or {}

    def create_event(self, ctx: Context, namespace: str, body: client.CoreV1Event):
        ctx.raise_if_done()
        return self.core_v1_api.create_namespaced_event(namespace, body)


__all__ = ["KubeCtl", "load_client_config"]
