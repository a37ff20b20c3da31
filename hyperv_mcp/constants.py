"""Centralized constants for Hyper-V MCP."""

# PowerShell invocation
POWERSHELL_EXECUTABLE = "powershell.exe"
POWERSHELL_FLAGS = ("-NoProfile", "-NonInteractive", "-EncodedCommand")
JSON_DEPTH = 6

# WMI / CIM
HYPERV_NAMESPACE = "root\\virtualization\\v2"
PLANNED_VM_CLASS = "Msvm_PlannedComputerSystem"
VSMS_CLASS = "Msvm_VirtualSystemManagementService"

# Cluster
CLUSTER_SERVICE = "ClusSvc"
VM_RESOURCE_TYPE = "Virtual Machine"

# Local trust bootstrap
LOCAL_ADMIN_GROUP = "Administrators"

# Hyper-V values
EXTERNAL_SWITCH_TYPE = "External"
AUTOSTART_NOTHING = "Nothing"
VM_STATE_RUNNING = "Running"
VM_STATE_OFF = "Off"
VM_CONFIG_EXTENSIONS = (".vmcx", ".xml")

# Compare-VM message ids for a network adapter bound to a switch the host lacks
SWITCH_NOT_FOUND_MESSAGE_IDS = frozenset({33012})

# Compatibility resolution
DEFAULT_SWITCH_HINT = "compute"

# Assertion budget (about 30 seconds)
DEFAULT_ASSERT_MAX_ATTEMPTS = 6
DEFAULT_ASSERT_INTERVAL = 5.0

# Local host aliases
LOCAL_HOST_ALIASES = frozenset({"localhost", ".", "127.0.0.1", "::1"})

# Common field names
HOST_ID = "host_id"
VM_ID = "vm_id"
VM_NAME = "vm_name"
SOURCE_HOST = "source_host"
DESTINATION_HOST = "destination_host"
