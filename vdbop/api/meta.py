# Labels and annotations the operator reads or sets on Kubernetes objects

VDB_INSTANCE_LABEL = "app.kubernetes.io/instance"
SUBCLUSTER_NAME_LABEL = "vertica.com/subcluster-name"
SUBCLUSTER_TYPE_LABEL = "vertica.com/subcluster-type"
SUBCLUSTER_TRANSIENT_LABEL = "vertica.com/subcluster-transient"
STS_REVISION_LABEL = "controller-revision-hash"

PRIMARY_SUBCLUSTER_TYPE = "primary"

VERSION_ANNOTATION = "vertica.com/version"
KUBERNETES_VERSION_ANNOTATION = "vertica.com/kubernetes-version"

CATALOG_PATH_ENV = "CATALOG_PATH"
