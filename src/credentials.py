"""
Windows password retrieval through instance metadata and the serial console.

The agent on the instance reads a public key from the ``windows-keys``
metadata entry, resets the user's password, and writes the password
encrypted with that key (RSA-OAEP, SHA-1) as a JSON line on serial port 4.
See https://cloud.google.com/compute/docs/instances/windows/automate-pw-generation
"""

import base64
import binascii
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

import polling
from clients import ComputeRestClient
from errors import CredentialExchangeError
from operations import wait_for_zone_operation

logger = logging.getLogger(__name__)

WINDOWS_KEYS_METADATA_KEY = "windows-keys"
PASSWORD_SERIAL_PORT = 4
KEY_EXPIRY = timedelta(minutes=5)


def _b64_int(value: int, length: Optional[int] = None) -> str:
    length = length or (value.bit_length() + 7) // 8
    return base64.b64encode(value.to_bytes(length, "big")).decode("ascii")


class WindowsKey:
    """A fresh RSA key pair and its windows-keys metadata payload."""

    def __init__(self, username: str, email: str = "nobody@nowhere.com"):
        self.username = username
        self.email = email
        self._private_key = rsa.generate_private_key(
            public_exponent=65537, key_size=2048
        )
        numbers = self._private_key.public_key().public_numbers()
        self.modulus = _b64_int(numbers.n)
        # Big-endian uint32 without its leading byte
        self.exponent = base64.b64encode(numbers.e.to_bytes(4, "big")[1:]).decode(
            "ascii"
        )
        self.expire_on = datetime.now(timezone.utc) + KEY_EXPIRY

    def metadata_value(self) -> str:
        return json.dumps(
            {
                "userName": self.username,
                "modulus": self.modulus,
                "exponent": self.exponent,
                "email": self.email,
                "expireOn": self.expire_on.strftime("%Y-%m-%dT%H:%M:%SZ"),
            }
        )

    def decrypt(self, encrypted_password: str) -> str:
        """
        Decode and decrypt the password from the agent response.

        Raises:
            CredentialExchangeError: If the ciphertext is not valid
        """
        try:
            ciphertext = base64.b64decode(encrypted_password, validate=True)
        except (binascii.Error, ValueError) as e:
            raise CredentialExchangeError(f"Cannot base64 decode password: {e}") from e
        try:
            plaintext = self._private_key.decrypt(
                ciphertext,
                padding.OAEP(
                    mgf=padding.MGF1(algorithm=hashes.SHA1()),
                    algorithm=hashes.SHA1(),
                    label=None,
                ),
            )
        except ValueError as e:
            raise CredentialExchangeError(f"Cannot decrypt password response: {e}") from e
        return plaintext.decode("utf-8")


def replace_metadata_item(items: List[Dict], key: str, value: str) -> List[Dict]:
    """Return ``items`` with ``key`` set to ``value``, replacing any prior entry."""
    updated = [dict(item) for item in items if item.get("key") != key]
    updated.append({"key": key, "value": value})
    return updated


def find_password_response(contents: str, modulus: str) -> Optional[Dict]:
    """
    Find the agent reply for ``modulus`` in serial console output.

    Lines that are not JSON, or answer another key, are skipped.
    """
    for line in contents.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            response = json.loads(line)
        except ValueError:
            logger.debug("Skipping non-JSON serial console line")
            continue
        if not isinstance(response, dict):
            continue
        if response.get("modulus") == modulus:
            return response
    return None


class WindowsPasswordExchange:
    """Resets the Windows password of an instance and returns it."""

    def __init__(
        self,
        compute: ComputeRestClient,
        zone: str,
        timeout: float = polling.PASSWORD_TIMEOUT,
        poll_interval: float = polling.PASSWORD_POLL_INTERVAL,
    ):
        self.compute = compute
        self.zone = zone
        self.timeout = timeout
        self.poll_interval = poll_interval

    def reset_password(self, instance: Dict, username: str) -> str:
        """
        Reset the password of ``username`` on ``instance``.

        Args:
            instance: Instance resource (needs name and metadata)
            username: Windows user to create or reset

        Returns:
            The new password

        Raises:
            CredentialExchangeError: If the reply cannot be decrypted
            WaitTimeoutError: If no reply arrives within the timeout
        """
        name = instance["name"]
        key = WindowsKey(username)

        logger.info(f"Writing Windows instance metadata for password reset on {name}")
        metadata = instance.get("metadata", {})
        items = replace_metadata_item(
            metadata.get("items", []), WINDOWS_KEYS_METADATA_KEY, key.metadata_value()
        )
        op = self.compute.set_metadata(
            self.zone,
            name,
            {"fingerprint": metadata.get("fingerprint"), "items": items},
        )
        wait_for_zone_operation(self.compute, self.zone, op)

        logger.info(f"Waiting for Windows password response from {name}")
        state = {"start": 0, "partial": ""}

        def poll():
            output = self.compute.get_serial_port_output(
                self.zone, name, port=PASSWORD_SERIAL_PORT, start=state["start"]
            )
            state["start"] = int(output.get("next") or state["start"])
            # A line may be split across two reads
            text = state["partial"] + output.get("contents", "")
            state["partial"] = text.rpartition("\n")[2]
            response = find_password_response(text, key.modulus)
            if response is None:
                return None
            if not response.get("encryptedPassword"):
                raise CredentialExchangeError(
                    f"Password reset on {name} failed: "
                    f"{response.get('errorMessage') or 'no password in response'}"
                )
            return key.decrypt(response["encryptedPassword"])

        return polling.wait_for(
            poll,
            timeout=self.timeout,
            interval=self.poll_interval,
            description=f"Windows password response from {name}",
        )
