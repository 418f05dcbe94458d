"""Ecocert identifier parsing and URL extraction from attestations."""

import re
from collections.abc import Iterable
from dataclasses import dataclass
from urllib.parse import urlsplit

from ecocert_archiver.models.attestation import EcocertAttestation
from ecocert_archiver.services.exceptions import InvalidEcocertIdError

_NUMERIC = re.compile(r"^\d+$")
_ADDRESS = re.compile(r"^0x[a-fA-F0-9]{40}$")


@dataclass(frozen=True)
class EcocertId:
    """Parsed components of an ecocert id ("{chain_id}-{contract_address}-{token_id}")."""

    chain_id: str
    contract_address: str
    token_id: str

    @property
    def full_id(self) -> str:
        return f"{self.chain_id}-{self.contract_address}-{self.token_id}"


def parse_ecocert_id(raw_id: str) -> EcocertId:
    """Parse and validate an ecocert id.

    Args:
        raw_id: Id such as "42220-0x16bA53B74c234C870c61EFC04cD418B8f2865959-123"

    Returns:
        EcocertId whose full_id equals raw_id

    Raises:
        InvalidEcocertIdError: If the id is not three dash-separated segments made of
            a numeric chain id, a 0x-prefixed 40 hex digit address and a numeric token id
    """
    parts = raw_id.split("-")
    if len(parts) != 3:
        raise InvalidEcocertIdError(f"Invalid ecocert ID format: {raw_id}", raw_id)

    chain_id, contract_address, token_id = parts

    if not _NUMERIC.match(chain_id):
        raise InvalidEcocertIdError(f"Invalid chain ID in ecocert ID: {chain_id}", raw_id)

    if not _ADDRESS.match(contract_address):
        raise InvalidEcocertIdError(
            f"Invalid contract address in ecocert ID: {contract_address}", raw_id
        )

    if not _NUMERIC.match(token_id):
        raise InvalidEcocertIdError(f"Invalid token ID in ecocert ID: {token_id}", raw_id)

    return EcocertId(chain_id=chain_id, contract_address=contract_address, token_id=token_id)


def is_valid_url(url: str) -> bool:
    """Check that a string is a syntactically valid http(s) URL with a host."""
    try:
        parsed = urlsplit(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def map_urls_to_attestations(attestations: Iterable[EcocertAttestation]) -> dict[str, str]:
    """Map each archivable URL to the uid of the first attestation citing it.

    Only url-typed sources with a valid http(s) URL are included; ipfs and arweave
    sources stay in the payload but are not archived. Insertion order follows the
    order sources appear in, so iteration yields de-duplicated URLs in citation order.
    """
    url_owners: dict[str, str] = {}
    for attestation in attestations:
        for source in attestation.data.sources:
            if source.type == "url" and is_valid_url(source.src):
                url_owners.setdefault(source.src, attestation.uid)
    return url_owners


def extract_urls(attestations: Iterable[EcocertAttestation]) -> list[str]:
    """Extract de-duplicated archivable URLs across attestations, in citation order."""
    return list(map_urls_to_attestations(attestations))
