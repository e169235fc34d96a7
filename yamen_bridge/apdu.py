"""
ACR122U pseudo-APDUs shared by the PC/SC and HID transports.

Both transports expose `transmit(apdu) -> (data, sw1, sw2)`; everything
above that (UID, key load, authentication, block read/write) is the same
byte-for-byte, so it lives here in ApduReader.
"""

import logging

from .errors import AuthenticationFailure, HardwareError, ReadError, WriteError

log = logging.getLogger("yamen_bridge.apdu")

SW_OK = (0x90, 0x00)

# GET DATA (UID): FF CA 00 00 00
APDU_GET_UID = [0xFF, 0xCA, 0x00, 0x00, 0x00]

# PC/SC RID found in contactless ATRs, followed by <standard> <name_hi> <name_lo>
PCSC_RID = [0xA0, 0x00, 0x00, 0x03, 0x06]

TAG_TYPE_NTAG = 0x44
TAG_TYPE_MIFARE_1K = 0x01
TAG_TYPE_MIFARE_4K = 0x02

TAG_TYPES = {
    TAG_TYPE_NTAG: "MIFARE Ultralight / NTAG",
    TAG_TYPE_MIFARE_1K: "MIFARE Classic 1K",
    TAG_TYPE_MIFARE_4K: "MIFARE Classic 4K",
    0x03: "MIFARE DESFire",
}


def hex_string(data) -> str:
    return bytes(data).hex().upper()


def tag_type_byte(atr):
    """
    Extract the tag type byte from a PC/SC contactless ATR.
    Returns the name_lo byte after the PC/SC RID, or None if not found.
    """
    atr = list(atr)
    for i in range(len(atr) - len(PCSC_RID)):
        if atr[i:i + len(PCSC_RID)] == PCSC_RID:
            type_idx = i + len(PCSC_RID) + 2  # skip standard + name_hi
            if type_idx < len(atr):
                return atr[type_idx]
    return None


def tag_type_name(atr) -> str:
    type_byte = tag_type_byte(atr)
    if type_byte is None:
        return "unknown"
    return TAG_TYPES.get(type_byte, f"unknown (0x{type_byte:02X})")


def parse_key(key) -> list[int]:
    """Accept a 6-byte key as hex string, bytes or list of ints."""
    if isinstance(key, str):
        key = bytes.fromhex(key)
    key = list(key)
    if len(key) != 6:
        raise ValueError(f"MIFARE key must be 6 bytes, got {len(key)}")
    return key


class ApduReader:
    """
    Reader surface used by verification and by the remote write path.

    Subclasses implement `transmit`, raising HardwareError when the transport
    itself fails. Status words are checked here.
    """

    name = "reader"

    def transmit(self, apdu):
        raise NotImplementedError

    def get_uid(self) -> str:
        data, sw1, sw2 = self.transmit(APDU_GET_UID)
        if (sw1, sw2) != SW_OK or not data:
            raise HardwareError(f"Get UID failed: SW={sw1:02X}{sw2:02X}")
        return hex_string(data)

    def load_key(self, key, key_slot=0x00):
        """
        Load an authentication key into the reader key store.
        APDU: FF 82 00 <key_slot> 06 <6-byte key>
        """
        apdu = [0xFF, 0x82, 0x00, key_slot, 0x06] + parse_key(key)
        data, sw1, sw2 = self.transmit(apdu)
        if (sw1, sw2) != SW_OK:
            raise AuthenticationFailure(f"Load key failed: SW={sw1:02X}{sw2:02X}")

    def authenticate(self, block, key_type, key, key_slot=0x00):
        """
        Authenticate a MIFARE Classic block with `key`.
        APDU: FF 86 00 00 05 01 00 <block> <key_type> <key_slot>
        key_type: 0x60 = Key A, 0x61 = Key B
        """
        self.load_key(key, key_slot)
        apdu = [0xFF, 0x86, 0x00, 0x00, 0x05,
                0x01, 0x00, block, key_type, key_slot]
        data, sw1, sw2 = self.transmit(apdu)
        if (sw1, sw2) != SW_OK:
            raise AuthenticationFailure(
                f"Auth block {block} failed: SW={sw1:02X}{sw2:02X}"
            )

    def read(self, block, length=16) -> bytes:
        """
        Read `length` bytes starting at `block`.
        APDU: FF B0 00 <block> <length>
        """
        apdu = [0xFF, 0xB0, 0x00, block, length]
        try:
            data, sw1, sw2 = self.transmit(apdu)
        except HardwareError as e:
            raise ReadError(f"Read block {block} transmit error: {e}") from e
        if (sw1, sw2) != SW_OK:
            raise ReadError(f"Read block {block} failed: SW={sw1:02X}{sw2:02X}", sw1, sw2)
        if len(data) < length:
            raise ReadError(f"Read block {block} returned {len(data)} bytes, expected {length}")
        return bytes(data[:length])

    def write(self, block, data, block_size=16):
        """
        Write `data` to consecutive blocks of `block_size` bytes.
        APDU per block: FF D6 00 <block> <block_size> <bytes>
        """
        data = list(data)
        if not data or len(data) % block_size != 0:
            raise WriteError(
                f"Write block {block}: data length {len(data)} is not a multiple of {block_size}"
            )
        for i in range(0, len(data), block_size):
            target = block + i // block_size
            chunk = data[i:i + block_size]
            apdu = [0xFF, 0xD6, 0x00, target, block_size] + chunk
            try:
                resp, sw1, sw2 = self.transmit(apdu)
            except HardwareError as e:
                raise WriteError(f"Write block {target} transmit error: {e}") from e
            if (sw1, sw2) != SW_OK:
                raise WriteError(
                    f"Write block {target} failed: SW=0x{sw1:02X}{sw2:02X}", sw1, sw2
                )
            log.debug("%s: wrote block %d OK", self.name, target)
