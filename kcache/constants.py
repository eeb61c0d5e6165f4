"""Module defining various global constants."""

# kcache version
VERSION = "1.0.0"

# On-disk database layout version.
# The major version must be identical for every process sharing a database root,
# which includes the node agent and the mount server.
LAYOUT_VERSION = "1.0.0"

# Special exit code for when kcache itself fails.
KCACHE_ERROR_CODE = 254

# Default roots of the cache database and the usage registry
DEFAULT_CACHE_DIR = "/run/kcache/caches"
DEFAULT_USAGE_DIR = "/run/kcache/usage"

# Directory used in place of a namespace for cluster-scoped caches.
# It is reserved and can never be used as a namespace.
CLUSTER_SCOPED_SUBDIR = "cluster-scoped"

# Per-name metadata file in the cache database
CACHE_FILENAME = "cache.json"

# Per-digest file in the usage registry
USAGE_FILENAME = "usage.json"

# Files at the root of a database directory
LOCK_FILENAME = ".lock"
LAYOUT_FILENAME = ".layout"

# Default external unpack primitive
DEFAULT_EXTRACTOR = "tcv"

# Label that ties a status record to the node that owns it
LABEL_HOSTNAME = "kcache.io/hostname"

# Finalizers placed on a status record are named "<prefix><cache name><suffix>"
FINALIZER_PREFIX = "kcache.io/"
FINALIZER_SUFFIX = "-finalizer"

# Requeue delays in seconds
RETRY_FAILURE = 5.0
RETRY_STATUS_UPDATE = 1.0
USAGE_POLL = 30.0

# Maximum number of seconds an extraction is allowed to take
EXTRACT_TIMEOUT = 600.0
