"""
Well-known names shared by the watcher and the built-in cleanup plugins.
"""

# Finalizer and annotation names
FINALIZER_NAME = "infra.894.io/node-cleanup"
SKIP_CLEANUP_ANNOTATION = "infra.894.io/skip-cleanup"
SKIP_CLEANUP_VALUE = "true"

# Plugin names
LOGGER_PLUGIN_NAME = "logger"
PORTWORX_PLUGIN_NAME = "portworx"

# Portworx labels
PORTWORX_ENABLED_LABEL = "px/enabled"
PORTWORX_STATUS_LABEL = "px/status"
PORTWORX_ENABLED_VALUE = "true"
DEFAULT_PORTWORX_LABEL_SELECTOR = f"{PORTWORX_ENABLED_LABEL}={PORTWORX_ENABLED_VALUE}"
DEFAULT_PORTWORX_API_ENDPOINT = "http://portworx-api:9001"
