"""Annotation keys, object names and kind names shared with the platform."""

# Written on scalables before they are scaled to zero; the platform's
# wake-on-traffic mechanism reads them to restore the replicas.
IDLED_AT_ANNOTATION = "idling.alpha.openshift.io/idled-at"
PREVIOUS_SCALE_ANNOTATION = "idling.alpha.openshift.io/previous-scale"

# Namespace marker for a project in force-sleep.
LAST_SLEEP_TIME_ANNOTATION = "openshift.io/last-sleep-time"

# ResourceQuota object applied while a project is force-slept.
FORCE_SLEEP_QUOTA_NAME = "force-sleep"
FORCE_SLEEP_QUOTA_HARD = {"pods": "0"}

DEPLOYMENT_CONFIG_ANNOTATION = "openshift.io/deployment-config.name"
POD_TEMPLATE_HASH_LABEL = "pod-template-hash"

POD = "Pod"
DEPLOYMENT = "Deployment"
STATEFUL_SET = "StatefulSet"
REPLICATION_CONTROLLER = "ReplicationController"
DEPLOYMENT_CONFIG = "DeploymentConfig"
BUILD = "Build"
RESOURCE_QUOTA = "ResourceQuota"

SCALABLE_KINDS = (DEPLOYMENT, STATEFUL_SET, REPLICATION_CONTROLLER, DEPLOYMENT_CONFIG)

ACTIVE_POD_PHASES = ("Pending", "Running", "Unknown")
FINISHED_POD_PHASES = ("Succeeded", "Failed")
ACTIVE_BUILD_PHASES = ("New", "Pending", "Running")
