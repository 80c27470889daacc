# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""File containing constants."""

from lightkube.generic_resource import create_namespaced_resource

APP_NAME = "dataprotection"
DATAPROTECTION_GROUP = "dataprotection.kubeblocks.io"
DATAPROTECTION_VERSION = "v1alpha1"

K8S_ALL_NAMESPACES = "*"

K8S_CHECK_ATTEMPTS = 15
K8S_CHECK_DELAY = 2
K8S_CHECK_OBSERVATIONS = 1

# Version of the layout of the files written into the backup repository
FORMAT_VERSION = "0.1.0"

DATAPROTECTION_FINALIZER = "dataprotection.kubeblocks.io/finalizer"

# Labels
APP_MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
APP_INSTANCE_LABEL = "app.kubernetes.io/instance"
COMPONENT_NAME_LABEL = "apps.kubeblocks.io/component-name"
SHARDING_NAME_LABEL = "apps.kubeblocks.io/sharding-name"
CLUSTER_UID_LABEL = "apps.kubeblocks.io/cluster-uid"
BACKUP_NAME_LABEL = "dataprotection.kubeblocks.io/backup-name"
BACKUP_NAMESPACE_LABEL = "dataprotection.kubeblocks.io/backup-namespace"
BACKUP_POLICY_LABEL = "dataprotection.kubeblocks.io/backup-policy"
BACKUP_TYPE_LABEL = "dataprotection.kubeblocks.io/backup-type"
BACKUP_SCHEDULE_LABEL = "dataprotection.kubeblocks.io/backup-schedule"
BACKUP_REPO_LABEL = "dataprotection.kubeblocks.io/backup-repo-name"
BACKUP_TARGET_LABEL = "dataprotection.kubeblocks.io/backup-target"
WAIT_REPO_PREPARATION_LABEL = "dataprotection.kubeblocks.io/wait-repo-preparation"
DELETE_BACKUP_LABEL = "dataprotection.kubeblocks.io/delete-backup"
JOB_NAME_LABEL = "job-name"
POD_ROLE_LABEL = "kubeblocks.io/role"

CLUSTER_LABEL_KEYS = (APP_INSTANCE_LABEL, COMPONENT_NAME_LABEL, SHARDING_NAME_LABEL)

# Annotations
SKIP_RECONCILIATION_ANNOTATION = "dataprotection.kubeblocks.io/skip-reconciliation"
DEFAULT_REPO_ANNOTATION = "dataprotection.kubeblocks.io/is-default-repo"
BACKUP_INFO_ANNOTATION = "dataprotection.kubeblocks.io/backup-info"
RESTORE_FROM_BACKUP_ANNOTATION = "kubeblocks.io/restore-from-backup"
CLUSTER_SNAPSHOT_ANNOTATION = "kubeblocks.io/cluster-snapshot"
OPS_REQUEST_ANNOTATION = "kubeblocks.io/ops-request"
LAST_APPLIED_CONFIG_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"

# Prefix of an action failure reason produced from the logs of the failed pod
LOG_COLLECTOR_OUTPUT = "logCollectorOutput"

# Mount path of the backup repository volume inside backup and deletion jobs
REPO_VOLUME_NAME = "dp-backup-data"
REPO_MOUNT_PATH = "/backupdata"
TERMINATION_MESSAGE_PATH = "/dev/termination-log"

# Environment variables handed over to the backup tools
DP_BACKUP_NAME = "DP_BACKUP_NAME"
DP_TARGET_POD_NAME = "DP_TARGET_POD_NAME"
DP_TARGET_POD_ROLE = "DP_TARGET_POD_ROLE"
DP_BACKUP_BASE_PATH = "DP_BACKUP_BASE_PATH"
DP_BACKUP_INFO_FILE = "DP_BACKUP_INFO_FILE"
DP_PARENT_BACKUP_NAME = "DP_PARENT_BACKUP_NAME"
DP_BASE_BACKUP_NAME = "DP_BASE_BACKUP_NAME"
DP_KOPIA_REPO_ROOT = "DP_KOPIA_REPO_ROOT"
DP_ENCRYPTION_ALGORITHM = "DATASAFED_ENCRYPTION_ALGORITHM"
DP_ENCRYPTION_PASS_PHRASE = "DATASAFED_ENCRYPTION_PASS_PHRASE"
DP_TOOL_CONFIG_PATH = "DATASAFED_CONFIG"
TOOL_CONFIG_MOUNT_PATH = "/etc/datasafed"
TOOL_CONFIG_VOLUME_NAME = "dp-tool-config"

SUPPORTED_ENCRYPTION_ALGORITHMS = frozenset({"AES-128-CFB", "AES-192-CFB", "AES-256-CFB"})

CLUSTER_RESOURCE = create_namespaced_resource("apps.kubeblocks.io", "v1", "Cluster", "clusters")
VOLUME_SNAPSHOT_RESOURCE = create_namespaced_resource(
    "snapshot.storage.k8s.io", "v1", "VolumeSnapshot", "volumesnapshots"
)
