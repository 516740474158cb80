import os

# Process execution
POWERSHELL_EXE = os.getenv("AOVPN_POWERSHELL", "powershell.exe")
COMMAND_TIMEOUT = int(os.getenv("AOVPN_COMMAND_TIMEOUT", "60"))
FEATURE_INSTALL_TIMEOUT = 900

# Logging
LOG_DIR = os.getenv("AOVPN_LOG_DIR", "")
LOG_FILE_NAME = "aovpn-tools.log"

# Public IP lookup
PUBLIC_IP_URL = os.getenv("AOVPN_PUBLIC_IP_URL", "https://ipinfo.io/json")
PUBLIC_IP_TIMEOUT = 10

# RRAS / NPS
VPN_FEATURE_NAME = "DirectAccess-VPN"
NPS_FEATURE_NAME = "NPAS"
REMOTE_ACCESS_SERVICE = "RemoteAccess"
# netsh prints in the OEM code page and reads exec scripts in the ANSI code page
NETSH_OUTPUT_ENCODING = os.getenv("AOVPN_NETSH_OUTPUT_ENCODING", "oem" if os.name == "nt" else "utf-8")
NETSH_SCRIPT_ENCODING = os.getenv("AOVPN_NETSH_SCRIPT_ENCODING", "mbcs" if os.name == "nt" else "utf-8")
IKEV2_PARAMETERS_KEY = r"HKLM:\SYSTEM\CurrentControlSet\Services\RemoteAccess\Parameters\Ikev2"
IKEV2_FRAGMENTATION_VALUE = "EnableServerFragmentation"
IKEV2_CERT_AUTH_FLAGS_VALUE = "CertAuthFlags"
IKEV2_CRL_CHECK_FLAG = 4
ROOT_CERT_STORE = r"Cert:\LocalMachine\Root"

# "Network Policy Server" audit subcategory, GUID form is language independent.
NPS_AUDIT_SUBCATEGORY = "{0CCE9243-69AE-11D9-BED3-505054503030}"

# VPNv2 CSP through the MDM bridge WMI provider
MDM_NAMESPACE = r"root\cimv2\mdm\dmmap"
MDM_VPN_CLASS = "MDM_VPNv2_01"
MDM_VPN_PARENT_ID = "./Vendor/MSFT/VPNv2"
NETWORK_LIST_PROFILES_KEY = r"HKLM:\SOFTWARE\Microsoft\Windows NT\CurrentVersion\NetworkList\Profiles"

# Recommended IPsec policy for IKEv2 test connections
IPSEC_POLICY = {
    "AuthenticationTransformConstants": "GCMAES128",
    "CipherTransformConstants": "GCMAES128",
    "EncryptionMethod": "AES128",
    "IntegrityCheckMethod": "SHA256",
    "DHGroup": "Group14",
    "PfsGroup": "ECP256",
}

# Certificate requests
RSA_KEY_LENGTHS = (2048, 3072, 4096)
ECDSA_KEY_LENGTHS = (256, 384)
SERVER_AUTH_EKU = "1.3.6.1.5.5.7.3.1"
IKE_INTERMEDIATE_EKU = "1.3.6.1.5.5.8.2.2"

# Connection polling
CONNECT_POLL_INTERVAL = 1.0
CONNECT_MAX_WAIT = 30
