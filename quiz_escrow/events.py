"""
Factory deployment event helpers

The MotherFactory emits
    ContractDeployed(address indexed contractAddress, string contractType,
                     address indexed creator, uint256 deploymentFee)
for every escrow it deploys. Indexed addresses live in topics[1] and
topics[2]; contractType and deploymentFee are ABI-encoded in ``data``.
"""

import logging
from typing import Any, Dict, List, Optional

from hexbytes import HexBytes
from web3 import Web3

logger = logging.getLogger(__name__)

CONTRACT_DEPLOYED_SIGNATURE = "ContractDeployed(address,string,address,uint256)"
CONTRACT_DEPLOYED_TOPIC = Web3.to_hex(Web3.keccak(text=CONTRACT_DEPLOYED_SIGNATURE))

_codec = Web3().codec


def to_hex_str(value: Any) -> Optional[str]:
    """Normalize str / bytes / HexBytes to a lowercase 0x-prefixed string"""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(HexBytes(value)).lower()
    value = str(value).lower()
    return value if value.startswith('0x') else '0x' + value


def topic_for_address(address: str) -> str:
    return "0x" + ("0" * 24) + address.lower().replace("0x", "")


def address_from_topic(topic: Any) -> str:
    return Web3.to_checksum_address("0x" + to_hex_str(topic)[-40:])


def _parse_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    value = str(value)
    return int(value, 16) if value.startswith('0x') else int(value)


def decode_contract_deployed(log: Dict[str, Any]) -> Dict[str, Any]:
    """Decode one ContractDeployed log entry. Raises ValueError on malformed logs."""
    topics = log.get('topics') or []
    if len(topics) < 3:
        raise ValueError(f"ContractDeployed log needs 3 topics, got {len(topics)}")

    data = log.get('data') or '0x'
    data_bytes = bytes(HexBytes(data))
    contract_type, deployment_fee = _codec.decode(['string', 'uint256'], data_bytes)

    return {
        'contract_address': address_from_topic(topics[1]),
        'creator': address_from_topic(topics[2]),
        'contract_type': contract_type,
        'deployment_fee': int(deployment_fee),
        'log_index': _parse_int(log.get('logIndex')),
    }


def find_deployment_events(logs: List[Dict[str, Any]], factory_address: str,
                           contract_type: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Scan transaction logs for factory deployment events.

    Args:
        logs: Raw log entries from a transaction receipt
        factory_address: Only logs emitted by this contract count
        contract_type: When given, only deployments of this type are returned

    Returns:
        Decoded events in log order
    """
    factory = factory_address.lower()
    events = []

    for position, log in enumerate(logs or []):
        address = (log.get('address') or '').lower()
        topics = log.get('topics') or []
        if address != factory or not topics or to_hex_str(topics[0]) != CONTRACT_DEPLOYED_TOPIC:
            continue

        try:
            event = decode_contract_deployed(log)
        except Exception as decode_error:
            logger.error(f"❌ Failed to decode ContractDeployed event at log {position}: {decode_error}")
            continue

        if contract_type and event['contract_type'] != contract_type:
            logger.info(f"ℹ️ Skipping {event['contract_type']} deployment at log {position}")
            continue

        event['position'] = position
        events.append(event)

    return events


def encode_contract_deployed_log(factory_address: str, contract_address: str, creator: str,
                                 contract_type: str = 'QuizEscrow', deployment_fee: int = 0,
                                 log_index: int = 0) -> Dict[str, Any]:
    """Build a log entry in RPC JSON form, e.g. for fixture receipts"""
    return {
        'address': factory_address,
        'topics': [
            CONTRACT_DEPLOYED_TOPIC,
            topic_for_address(contract_address),
            topic_for_address(creator),
        ],
        'data': Web3.to_hex(_codec.encode(['string', 'uint256'], [contract_type, deployment_fee])),
        'logIndex': hex(log_index),
    }
