# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Models shared by the data protection CRDs."""

from typing import Dict, List, Optional

from lightkube.core.schema import DictMixin, dataclass
from lightkube.models import meta_v1

API_GROUP = "dataprotection.kubeblocks.io"
API_VERSION = "v1alpha1"

NAMESPACED_VERBS = [
    "delete",
    "deletecollection",
    "get",
    "global_list",
    "global_watch",
    "list",
    "patch",
    "post",
    "put",
    "watch",
]
GLOBAL_VERBS = ["delete", "deletecollection", "get", "list", "patch", "post", "put", "watch"]


@dataclass
class SecretKeyRef(DictMixin):
    """Reference to a key of a Secret."""

    name: str
    key: str


@dataclass
class EncryptionConfig(DictMixin):
    """Encryption of the backup data."""

    algorithm: str
    passPhraseSecretKeyRef: Optional[SecretKeyRef] = None


@dataclass
class PodSelector(DictMixin):
    """Rule selecting the target pods of a backup target."""

    matchLabels: Optional[Dict[str, str]] = None
    matchExpressions: Optional[List[meta_v1.LabelSelectorRequirement]] = None
    fallbackLabelSelector: Optional[meta_v1.LabelSelector] = None
    strategy: Optional[str] = None
    useParentSelectedPods: Optional[bool] = None


@dataclass
class BackupTarget(DictMixin):
    """Target of a backup method or policy."""

    name: Optional[str] = None
    podSelector: Optional[PodSelector] = None
    serviceAccountName: Optional[str] = None
    containerPort: Optional[Dict[str, str]] = None
