"""Contract ABI utilities for ipforge.

This module provides utilities for loading Story Protocol contract ABIs from package
resources. ABIs are stored as JSON files in this directory (only the functions and
events the registration client calls) and loaded dynamically at runtime.
"""

import json
from pathlib import Path


def get_contract_abi(contract_name: str) -> list[dict]:
    """Load contract ABI from package resources.

    Args:
        contract_name: Name of the contract (e.g. "DerivativeWorkflows")

    Returns:
        ABI as list of function/event descriptors

    Raises:
        FileNotFoundError: If ABI file doesn't exist for the specified contract

    Example:
        >>> abi = get_contract_abi("LicensingModule")
        >>> contract = w3.eth.contract(address=addr, abi=abi)
    """
    abi_path = Path(__file__).parent / f"{contract_name}.json"

    if not abi_path.exists():
        raise FileNotFoundError(f"ABI file not found: {abi_path}")

    with open(abi_path) as f:
        return json.load(f)
