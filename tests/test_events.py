"""
Tests for ContractDeployed log decoding
"""

from web3 import Web3

from quiz_escrow.events import (
    CONTRACT_DEPLOYED_TOPIC,
    address_from_topic,
    decode_contract_deployed,
    encode_contract_deployed_log,
    find_deployment_events,
    to_hex_str,
)

from helpers import CREATOR, ESCROW_A, ESCROW_B, FACTORY, OTHER_CONTRACT, OTHER_CREATOR


class TestDecoding:

    def test_topic_matches_event_signature(self):
        expected = Web3.keccak(text='ContractDeployed(address,string,address,uint256)').hex()
        assert to_hex_str(CONTRACT_DEPLOYED_TOPIC) == to_hex_str(expected)

    def test_decode_contract_deployed(self):
        log = encode_contract_deployed_log(FACTORY, ESCROW_A, CREATOR, deployment_fee=1234, log_index=3)
        event = decode_contract_deployed(log)

        assert event['contract_address'] == ESCROW_A
        assert event['creator'] == CREATOR
        assert event['contract_type'] == 'QuizEscrow'
        assert event['deployment_fee'] == 1234
        assert event['log_index'] == 3

    def test_address_from_topic_accepts_bytes(self):
        topic = bytes.fromhex('00' * 12 + CREATOR[2:].lower())
        assert address_from_topic(topic) == CREATOR


class TestFindDeploymentEvents:

    def test_filters_by_factory_and_type(self):
        logs = [
            {'address': OTHER_CONTRACT, 'topics': ['0x' + '00' * 32], 'data': '0x'},
            encode_contract_deployed_log(OTHER_CONTRACT, ESCROW_B, CREATOR),
            encode_contract_deployed_log(FACTORY, ESCROW_B, CREATOR, contract_type='Raffle'),
            encode_contract_deployed_log(FACTORY.lower(), ESCROW_A, OTHER_CREATOR),
        ]

        events = find_deployment_events(logs, FACTORY, 'QuizEscrow')

        assert len(events) == 1
        assert events[0]['contract_address'] == ESCROW_A
        assert events[0]['position'] == 3

    def test_malformed_log_is_skipped(self):
        broken = {'address': FACTORY, 'topics': [CONTRACT_DEPLOYED_TOPIC], 'data': '0x'}
        good = encode_contract_deployed_log(FACTORY, ESCROW_A, CREATOR)

        events = find_deployment_events([broken, good], FACTORY)
        assert [e['contract_address'] for e in events] == [ESCROW_A]

    def test_no_logs(self):
        assert find_deployment_events([], FACTORY) == []
