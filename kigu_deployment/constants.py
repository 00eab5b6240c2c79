from pathlib import Path

import kigu_deployment

#
# Filesystem
#

DEPLOYMENT_DIR = Path(kigu_deployment.__file__).parent
PROJECT_DIR = DEPLOYMENT_DIR.parent
PLANS_DIR = DEPLOYMENT_DIR / "plans"
ARTIFACTS_DIR = PROJECT_DIR / "generated"
MANIFEST_DIR = PROJECT_DIR / ".manifests"

#
# Environment
#

DEPLOYMENT_VERSION_ENVVAR = "DEPLOYMENT_VERSION"
ARTIFACTS_DIR_ENVVAR = "KIGU_ARTIFACTS_DIR"
AUTOSIGN_ENVVAR = "KIGU_AUTOSIGN"
DEPLOYER_ACCOUNT_ENVVAR = "DEPLOYER_ACCOUNT"
DEPLOYER_PRIVATE_KEY_ENVVAR = "DEPLOYER_PRIVATE_KEY"
DEPLOYER_PASSPHRASE_ENVVAR = "DEPLOYER_PASSPHRASE"

DEFAULT_DEPLOYMENT_VERSION = "0"
IMPORTED_DEPLOYER_ALIAS = "kigu-deployer"

#
# Contracts
#

OZ_DEPENDENCY_NAME = "openzeppelin"
OZ_VERSION = "5.0.0"
PROXY_CONTRACT_NAME = "TransparentUpgradeableProxy"
PROXY_ADMIN_CONTRACT_NAME = "ProxyAdmin"
DEFAULT_INITIALIZER = "initialize"

# EIP1967 slots - https://eips.ethereum.org/EIPS/eip-1967
EIP1967_IMPLEMENTATION_SLOT = 0x360894A13BA1A3210667C828492DB98DCA3E2076CC3735A920A3CA505D382BBC
EIP1967_ADMIN_SLOT = 0xB53127684A568B3173AE13B9F8A6016E243E63B6E8EE1178D6A717850B5D6103

#
# Transactions
#

# bounded confirmation wait for proxy deployments and upgrades
PROXY_CONFIRMATION_TIMEOUT = 180  # seconds
PROXY_POLLING_INTERVAL = 3  # seconds

#
# Verification
#

ALREADY_VERIFIED_MARKER = "already verified"
IMPLEMENTATION_NAME_SUFFIX = "_Impl"
