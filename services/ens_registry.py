"""
ENS registry service

Label validation, commitment hashing and call-data construction for the
ETHRegistrarController, plus the read-only lookups the orchestrators need
(availability, rent price, ownership, name resolution).
"""

import re
import logging
import secrets
from typing import Any, Dict, List, Optional, Sequence

from eth_abi import encode
from eth_utils import keccak, to_bytes
from ens import AsyncENS
from ens.utils import normalize_name
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError

from chain_config import (
    ETH_NODE, MAX_YEARS, MIN_LABEL_LENGTH, MIN_YEARS, SECONDS_PER_YEAR, ZERO_ADDRESS,
    NetworkConfig,
)
from performance_monitor import OperationTimer
from services.errors import ExternalServiceError, ValidationError
from utils.abi import checksum, encode_call, hex_to_bytes32

logger = logging.getLogger(__name__)

ADDRESS_RE = re.compile(r'^0x[a-fA-F0-9]{40}$')
SUBDOMAIN_LABEL_RE = re.compile(r'^[a-z0-9]([a-z0-9-]*[a-z0-9])?$')

CONTROLLER_ABI = [
    {"inputs": [{"name": "name", "type": "string"}], "name": "available",
     "outputs": [{"name": "", "type": "bool"}], "stateMutability": "view", "type": "function"},
    {"inputs": [{"name": "name", "type": "string"}, {"name": "duration", "type": "uint256"}],
     "name": "rentPrice",
     "outputs": [{"components": [{"name": "base", "type": "uint256"}, {"name": "premium", "type": "uint256"}],
                  "name": "price", "type": "tuple"}],
     "stateMutability": "view", "type": "function"},
]

BASE_REGISTRAR_ABI = [
    {"inputs": [{"name": "tokenId", "type": "uint256"}], "name": "ownerOf",
     "outputs": [{"name": "", "type": "address"}], "stateMutability": "view", "type": "function"},
]

REGISTRY_ABI = [
    {"inputs": [{"name": "node", "type": "bytes32"}], "name": "owner",
     "outputs": [{"name": "", "type": "address"}], "stateMutability": "view", "type": "function"},
]

REGISTER_TYPES = ['string', 'address', 'uint256', 'bytes32', 'address', 'bytes[]', 'bool', 'uint16']


# ====================================================================
# NAME HANDLING
# ====================================================================

def normalize_label(domain_name: str) -> str:
    """
    Normalize a second-level .eth label.

    Strips a trailing '.eth', applies ENSIP-15 normalization and enforces
    the minimum label length. Raises ValidationError on bad input.
    """
    raw = (domain_name or '').strip().lower()
    if raw.endswith('.eth'):
        raw = raw[:-4]
    if not raw:
        raise ValidationError("Please provide a domain name")
    if '.' in raw:
        raise ValidationError(f"'{raw}' is not a single label. Use a name like 'myname' or 'myname.eth'")
    try:
        normalized = normalize_name(raw)
    except Exception as e:
        raise ValidationError("Invalid ENS name format", reason=str(e))
    if len(normalized) < MIN_LABEL_LENGTH:
        raise ValidationError(f"Name must be at least {MIN_LABEL_LENGTH} characters")
    return normalized


def parse_years(raw: Optional[str]) -> int:
    if raw is None or raw == '':
        return MIN_YEARS
    try:
        years = int(raw)
    except ValueError:
        raise ValidationError(f"Invalid duration. Please specify {MIN_YEARS}-{MAX_YEARS} years.")
    if years < MIN_YEARS or years > MAX_YEARS:
        raise ValidationError(f"Invalid duration. Please specify {MIN_YEARS}-{MAX_YEARS} years.")
    return years


def years_to_duration(years: int) -> int:
    return years * SECONDS_PER_YEAR


def is_valid_address(address: str) -> bool:
    return bool(address) and bool(ADDRESS_RE.match(address))


def is_valid_subdomain_label(label: str) -> bool:
    return 1 <= len(label) <= 63 and bool(SUBDOMAIN_LABEL_RE.match(label))


def parse_subdomain(name: str) -> Dict[str, str]:
    """Split 'alice.parent.eth' into its labels. One subdomain level only."""
    normalized = (name or '').strip().lower()
    if normalized.endswith('.eth'):
        normalized = normalized[:-4]
    parts = normalized.split('.')
    if len(parts) != 2 or not all(parts):
        raise ValidationError('Invalid format. Use "subdomain.domain.eth" (e.g., "alice.mydomain.eth")')
    subdomain, parent = parts
    for label, kind in ((subdomain, 'subdomain'), (parent, 'domain')):
        if not is_valid_subdomain_label(label):
            raise ValidationError(
                f'Invalid {kind} "{label}". Must be 1-63 characters, alphanumeric with '
                f'optional hyphens (not at start/end).'
            )
    return {'subdomain': subdomain, 'parent': parent, 'full_name': f"{subdomain}.{parent}.eth"}


def label_hash(label: str) -> bytes:
    return keccak(to_bytes(text=label))


def namehash(name: str) -> bytes:
    node = b'\x00' * 32
    labels = [part for part in name.split('.') if part]
    for label in reversed(labels):
        node = keccak(node + label_hash(label))
    return node


def eth_child_node(label: str) -> bytes:
    return keccak(hex_to_bytes32(ETH_NODE) + label_hash(label))


def token_id(label: str) -> int:
    return int.from_bytes(label_hash(label), 'big')


# ====================================================================
# COMMIT-REVEAL
# ====================================================================

def generate_secret() -> str:
    """Random 256-bit commitment secret"""
    return '0x' + secrets.token_hex(32)


def _register_args(label: str, owner: str, duration: int, secret: str, resolver: str,
                   data: Sequence[bytes], reverse_record: bool, fuses: int) -> List[Any]:
    return [label, checksum(owner), duration, hex_to_bytes32(secret), checksum(resolver),
            list(data), reverse_record, fuses]


def make_commitment(label: str, owner: str, duration: int, secret: str, resolver: str = ZERO_ADDRESS,
                    data: Sequence[bytes] = (), reverse_record: bool = False, fuses: int = 0) -> str:
    """
    Commitment hash as computed by ETHRegistrarController.makeCommitment:
    keccak256(abi.encode(labelhash, owner, duration, secret, resolver, data, reverseRecord, fuses))
    """
    if data and resolver == ZERO_ADDRESS:
        raise ValidationError("A resolver is required when record data is supplied")
    encoded = encode(
        ['bytes32', 'address', 'uint256', 'bytes32', 'address', 'bytes[]', 'bool', 'uint16'],
        [label_hash(label), checksum(owner), duration, hex_to_bytes32(secret), checksum(resolver),
         list(data), reverse_record, fuses],
    )
    return '0x' + keccak(encoded).hex()


def encode_commit(commitment: str) -> str:
    return encode_call('commit', ['bytes32'], [hex_to_bytes32(commitment)])


def encode_register(label: str, owner: str, duration: int, secret: str, resolver: str = ZERO_ADDRESS,
                    data: Sequence[bytes] = (), reverse_record: bool = False, fuses: int = 0) -> str:
    return encode_call('register', REGISTER_TYPES,
                       _register_args(label, owner, duration, secret, resolver, data, reverse_record, fuses))


def encode_safe_transfer(sender: str, recipient: str, label: str) -> str:
    return encode_call('safeTransferFrom', ['address', 'address', 'uint256'],
                       [checksum(sender), checksum(recipient), token_id(label)])


def encode_set_subnode_record(parent_node: bytes, subdomain: str, owner: str, resolver: str, ttl: int = 0) -> str:
    return encode_call('setSubnodeRecord', ['bytes32', 'bytes32', 'address', 'address', 'uint64'],
                       [parent_node, label_hash(subdomain), checksum(owner), checksum(resolver), ttl])


# ====================================================================
# ON-CHAIN LOOKUPS
# ====================================================================

class ENSService:
    """Read-only ENS lookups on one network"""

    def __init__(self, network: NetworkConfig, rpc_url: str, w3: Optional[AsyncWeb3] = None):
        self.network = network
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.controller = self.w3.eth.contract(address=checksum(network.registrar_controller), abi=CONTROLLER_ABI)
        self.registrar = self.w3.eth.contract(address=checksum(network.base_registrar), abi=BASE_REGISTRAR_ABI)
        self.registry = self.w3.eth.contract(address=checksum(network.ens_registry), abi=REGISTRY_ABI)
        logger.info(f"🔧 ENS service initialized for {network.name}")

    async def check_availability(self, label: str) -> bool:
        try:
            with OperationTimer(f"ens_available_{self.network.key}"):
                return bool(await self.controller.functions.available(label).call())
        except Exception as e:
            logger.error(f"❌ ENS: availability check failed for {label}: {e}")
            raise ExternalServiceError("Could not check availability right now. Please try again later.") from e

    async def get_registration_cost(self, label: str, years: int) -> int:
        """Base price plus any decaying premium, in wei"""
        try:
            with OperationTimer(f"ens_rent_price_{self.network.key}"):
                base, premium = await self.controller.functions.rentPrice(label, years_to_duration(years)).call()
        except Exception as e:
            logger.error(f"❌ ENS: rent price lookup failed for {label}: {e}")
            raise ExternalServiceError("Could not fetch the registration price. Please try again later.") from e
        return int(base) + int(premium)

    async def get_owner(self, label: str) -> Optional[str]:
        """Registrant of label.eth; None when unregistered or expired"""
        try:
            return await self.registrar.functions.ownerOf(token_id(label)).call()
        except ContractLogicError:
            return None
        except Exception as e:
            logger.error(f"❌ ENS: ownerOf failed for {label}: {e}")
            raise ExternalServiceError("Could not verify domain ownership. Please try again later.") from e

    async def get_registry_owner(self, node: bytes) -> str:
        try:
            return await self.registry.functions.owner(node).call()
        except Exception as e:
            logger.error(f"❌ ENS: registry owner lookup failed: {e}")
            raise ExternalServiceError("Could not read the ENS registry. Please try again later.") from e

    async def resolve_recipient(self, recipient: str) -> str:
        """Accept a 0x address or resolve an ENS name to one"""
        recipient = (recipient or '').strip()
        if is_valid_address(recipient):
            return checksum(recipient)
        if not recipient.lower().endswith('.eth'):
            raise ValidationError(f'Invalid recipient "{recipient}". Must be an Ethereum address or ENS name.')
        try:
            address = await AsyncENS.from_web3(self.w3).address(recipient)
        except Exception as e:
            logger.warning(f"⚠️ ENS: failed to resolve {recipient}: {e}")
            raise ValidationError(f'Failed to resolve ENS name "{recipient}"') from e
        if not address:
            raise ValidationError(f'ENS name "{recipient}" does not resolve to an address')
        return checksum(address)
