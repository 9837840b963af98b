#!/usr/bin/env python3
"""
VGN Dragonfly 4K receiver configuration tool

Sets polling rate, click debounce and motion sync on the VGN Dragonfly
wireless receiver (VID 0x3554) from Linux.

Protocol summary:
  - Settings are written with a HID SET_REPORT control transfer
    (bmRequestType 0x21, bRequest 0x09, wValue 0x0208, wIndex 1)
  - All reports are 17 bytes and start with report ID 0x08, command 0x07
  - The payloads are fixed vendor constants, one per setting value
  - The device acknowledges a write by accepting all 17 bytes

Requires: pip install pyusb (and libusb-1.0 on the host)
Requires udev rule for non-root access (see --udev-rule)
"""

import argparse
import enum
import logging
import sys
from dataclasses import dataclass

import usb.core
import usb.util

log = logging.getLogger(__name__)

VENDOR_ID = 0x3554
DEFAULT_PRODUCT_ID = "f505"  # 4K dongle

REPORT_LENGTH = 17

# HID SET_REPORT, Output report 0x08 on interface 1
REPORT_REQUEST_TYPE = 0x21  # host to device | class | interface
REPORT_REQUEST = 0x09
REPORT_VALUE = 0x0208
REPORT_INDEX = 1
TRANSFER_TIMEOUT_MS = 1000


class SettingKind(enum.Enum):
    POLLING_RATE = "polling rate"
    DEBOUNCE = "debounce"
    MOTION_SYNC = "motion sync"


# ---- Errors ----

class DragonflyError(Exception):
    """Fatal error: the current invocation cannot continue."""


class InvalidProductIDError(DragonflyError):
    pass


class DeviceNotFoundError(DragonflyError):
    pass


class AutoDetachUnsupportedError(DragonflyError):
    pass


class ConfigurationError(DragonflyError):
    pass


class InterfaceClaimError(DragonflyError):
    pass


class TransferError(DragonflyError):
    pass


class UnexpectedValueError(DragonflyError):
    """Raised when the encoder is asked for a value it has no report for."""


# ---- Protocol tables ----

POLLING_RATE_REPORTS = {
    125: bytes.fromhex("080700000006084d015400550000000041"),
    250: bytes.fromhex("0807000000060451015400550000000041"),
    500: bytes.fromhex("0807000000060253015400550000000041"),
    1000: bytes.fromhex("0807000000060154015400550000000041"),
    2000: bytes.fromhex("0807000000061045015400550000000041"),
    4000: bytes.fromhex("0807000000062035015400550000000041"),
}

DEBOUNCE_REPORTS = {
    1: bytes.fromhex("08070000a90a01540154064f00550055ea"),
    2: bytes.fromhex("08070000a90a02530154064f00550055ea"),
    4: bytes.fromhex("08070000a90a04510154064f00550055ea"),
    8: bytes.fromhex("08070000a90a084d0154064f00550055ea"),
    15: bytes.fromhex("08070000a90a15400154064f00550055ea"),
    20: bytes.fromhex("08070000a90a14410154064f00550055ea"),
}

MOTION_SYNC_REPORTS = {
    "on": bytes.fromhex("08070000a90a00550154064f00550055ea"),
    "off": bytes.fromhex("08070000a90a00550055064f00550055ea"),
}

REPORTS = {
    SettingKind.POLLING_RATE: POLLING_RATE_REPORTS,
    SettingKind.DEBOUNCE: DEBOUNCE_REPORTS,
    SettingKind.MOTION_SYNC: MOTION_SYNC_REPORTS,
}

# "Not requested" value for each setting
UNSET = {
    SettingKind.POLLING_RATE: 0,
    SettingKind.DEBOUNCE: 0,
    SettingKind.MOTION_SYNC: "",
}


def encode(kind: SettingKind, value) -> bytes:
    """Return the 17-byte report that sets ``kind`` to ``value``."""
    try:
        return REPORTS[kind][value]
    except KeyError:
        raise UnexpectedValueError(
            f"Unexpected {kind.value} value: {value!r}") from None


def describe(payload: bytes) -> str:
    return " ".join(f"{b:02x}" for b in payload)


def parse_product_id(product_id: str) -> int:
    """Parse a hex product ID string ('f505' or '0xf505') into an int."""
    try:
        pid = int(product_id.strip(), 16)
    except ValueError:
        raise InvalidProductIDError(
            f"Couldn't convert product ID '{product_id}' to int") from None
    if pid < 0 or pid > 0xFFFF:
        raise InvalidProductIDError(
            f"Product ID '{product_id}' does not fit in 16 bits")
    return pid


# ---- Device session ----

class DeviceSession:
    """An opened receiver with its configuration and claimed interfaces.

    Use as a context manager; ``close()`` releases everything that was
    acquired, in reverse order, whether or not the body raised.
    """

    def __init__(self, device, vendor_id: int, product_id: int):
        self.device = device
        self.vendor_id = vendor_id
        self.product_id = product_id
        self.config = None
        self.interfaces: list[int] = []
        self.auto_detach = False
        self._detached: list[int] = []

    @classmethod
    def open(cls, vendor_id: int, product_id: str) -> "DeviceSession":
        pid = parse_product_id(product_id)
        try:
            device = usb.core.find(idVendor=vendor_id, idProduct=pid)
        except usb.core.NoBackendError as e:
            raise DeviceNotFoundError(f"No USB backend available: {e}") from e
        if device is None:
            raise DeviceNotFoundError(
                f"Couldn't open device with VID {vendor_id:04x} and PID {pid:04x}")
        log.debug("Found device %04x:%04x", vendor_id, pid)
        return cls(device, vendor_id, pid)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def enable_auto_detach(self):
        """Detach kernel drivers before claiming and reattach them on close."""
        try:
            self.device.is_kernel_driver_active(0)
        except NotImplementedError:
            raise AutoDetachUnsupportedError(
                "Couldn't set auto detach on: not supported on this platform"
            ) from None
        except usb.core.USBError as e:
            raise AutoDetachUnsupportedError(
                f"Couldn't set auto detach on: {e}") from e
        self.auto_detach = True

    def get_active_config(self):
        try:
            self.config = self.device.get_active_configuration()
        except usb.core.USBError as e:
            raise ConfigurationError(f"Couldn't get active config: {e}") from e
        log.debug("Active configuration %s",
                  getattr(self.config, "bConfigurationValue", "?"))
        return self.config

    def claim_all_interfaces(self) -> list[int]:
        """Claim alternate setting 0 of every interface in the active config."""
        if self.config is None:
            self.get_active_config()

        # Iterating a configuration yields one entry per alternate setting
        numbers = []
        for intf in self.config:
            if intf.bInterfaceNumber not in numbers:
                numbers.append(intf.bInterfaceNumber)

        for number in numbers:
            try:
                if (self.auto_detach
                        and self.device.is_kernel_driver_active(number)):
                    self.device.detach_kernel_driver(number)
                    self._detached.append(number)
                    log.debug("Detached kernel driver from interface %d", number)
                usb.util.claim_interface(self.device, number)
                self.interfaces.append(number)
                self.device.set_interface_altsetting(
                    interface=number, alternate_setting=0)
            except usb.core.USBError as e:
                raise InterfaceClaimError(
                    f"Failed to obtain interface {number}: {e}") from e
            log.debug("Claimed interface %d", number)
        return list(self.interfaces)

    def send_report(self, payload: bytes) -> int:
        """Send a SET_REPORT control transfer. Returns bytes transferred."""
        log.debug("SET_REPORT %s", describe(payload))
        try:
            return self.device.ctrl_transfer(
                REPORT_REQUEST_TYPE, REPORT_REQUEST, REPORT_VALUE,
                REPORT_INDEX, payload, timeout=TRANSFER_TIMEOUT_MS)
        except usb.core.USBError as e:
            raise TransferError(f"Error sending control: {e}") from e

    def close(self):
        if self.device is None:
            return

        while self.interfaces:
            number = self.interfaces.pop()
            try:
                usb.util.release_interface(self.device, number)
                log.debug("Released interface %d", number)
            except usb.core.USBError as e:
                log.warning("Couldn't release interface %d: %s", number, e)

        while self._detached:
            number = self._detached.pop()
            try:
                self.device.attach_kernel_driver(number)
                log.debug("Reattached kernel driver to interface %d", number)
            except usb.core.USBError as e:
                log.warning("Couldn't reattach kernel driver to interface %d: %s",
                            number, e)

        self.config = None
        usb.util.dispose_resources(self.device)
        self.device = None


# ---- Command dispatch ----

ALLOWED_VALUES = {kind: tuple(table) for kind, table in REPORTS.items()}


@dataclass
class Settings:
    polling_rate: int = 0
    debounce: int = 0
    motion_sync: str = ""
    product_id: str = DEFAULT_PRODUCT_ID
    flag_count: int = 0

    def value(self, kind: SettingKind):
        return {
            SettingKind.POLLING_RATE: self.polling_rate,
            SettingKind.DEBOUNCE: self.debounce,
            SettingKind.MOTION_SYNC: self.motion_sync,
        }[kind]


def is_valid(kind: SettingKind, value) -> bool:
    return value in ALLOWED_VALUES[kind]


def too_many_settings(settings: Settings) -> bool:
    """More than one flag is only allowed together with a non-default -pid."""
    return (settings.flag_count > 1
            and settings.product_id == DEFAULT_PRODUCT_ID)


def success_message(kind: SettingKind, value) -> str:
    if kind is SettingKind.POLLING_RATE:
        return f"Polling rate set to {value}"
    if kind is SettingKind.DEBOUNCE:
        return f"Debounce set to {value}"
    return f"Motion sync has been turned {value}"


APPLY_ORDER = (
    SettingKind.MOTION_SYNC,
    SettingKind.POLLING_RATE,
    SettingKind.DEBOUNCE,
)


def apply_settings(session: DeviceSession,
                   settings: Settings) -> list[SettingKind]:
    """Write every requested, valid setting. Returns the acknowledged kinds."""
    applied = []
    for kind in APPLY_ORDER:
        value = settings.value(kind)
        if value == UNSET[kind]:
            continue
        if not is_valid(kind, value):
            print(f"Invalid {kind.value} setting received, ignoring...")
            continue

        payload = encode(kind, value)
        written = session.send_report(payload)
        if written == REPORT_LENGTH:
            print(success_message(kind, value))
            applied.append(kind)
        else:
            log.warning("Device accepted %s of %d bytes for %s",
                        written, REPORT_LENGTH, kind.value)
    return applied


def configure_device(settings: Settings) -> list[SettingKind]:
    with DeviceSession.open(VENDOR_ID, settings.product_id) as session:
        session.enable_auto_detach()
        session.get_active_config()
        session.claim_all_interfaces()
        return apply_settings(session, settings)


# ---- CLI ----

def udev_rule(product_id: int) -> str:
    return (
        f'SUBSYSTEM=="usb", ATTRS{{idVendor}}=="{VENDOR_ID:04x}", '
        f'ATTRS{{idProduct}}=="{product_id:04x}", MODE="0660", TAG+="uaccess"'
    )


def print_udev_rule(product_id: int):
    print("Add this udev rule to /etc/udev/rules.d/99-vgn-dragonfly.rules:")
    print()
    print(f"  {udev_rule(product_id)}")
    print()
    print("Then reload rules:")
    print("  sudo udevadm control --reload-rules && sudo udevadm trigger")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dragonfly-cli",
        description="VGN Dragonfly receiver configuration tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
examples:
  %(prog)s -pr 1000                 Set polling rate to 1000 Hz
  %(prog)s -db=4                    Set debounce to 4 ms
  %(prog)s -ms on                   Turn motion sync on
  %(prog)s -pid f501 -pr 4000       Target another receiver product ID
  %(prog)s --udev-rule              Print udev rule for non-root access

Only one setting can be changed per invocation.
""",
    )
    # None marks "not given" so explicitly supplied flags can be counted
    parser.add_argument(
        "-pr", type=int, default=None, metavar="HZ",
        help="Polling rate to set device to "
             "(allowed values: 125, 250, 500, 1000, 2000, 4000)")
    parser.add_argument(
        "-db", type=int, default=None, metavar="MS",
        help="Debounce delay to set (allowed values: 0, 1, 2, 4, 8, 15, 20)")
    parser.add_argument(
        "-pid", type=str, default=None, metavar="HEX",
        help=f"Product ID matching the device (default: {DEFAULT_PRODUCT_ID}, "
             "4K VGN dongle)")
    parser.add_argument(
        "-ms", type=str, default=None, metavar="on|off",
        help="Turn Motion Sync on or off (allowed values: on, off)")
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Log USB traffic to stderr")
    parser.add_argument(
        "--udev-rule", action="store_true",
        help="Print udev rule for non-root access and exit")
    return parser


def settings_from_args(args) -> Settings:
    given = [args.pr, args.db, args.pid, args.ms]
    return Settings(
        polling_rate=args.pr if args.pr is not None else 0,
        debounce=args.db if args.db is not None else 0,
        motion_sync=args.ms if args.ms is not None else "",
        product_id=args.pid if args.pid else DEFAULT_PRODUCT_ID,
        flag_count=sum(1 for flag in given if flag is not None),
    )


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    settings = settings_from_args(args)

    try:
        if args.udev_rule:
            print_udev_rule(parse_product_id(settings.product_id))
            return 0

        # TODO: confirm with upstream whether a rejected combination should exit 1
        if too_many_settings(settings):
            print("Changing more than 1 setting at one go is not supported")
            return 0

        configure_device(settings)
    except (DeviceNotFoundError, InterfaceClaimError,
            AutoDetachUnsupportedError) as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Make sure the receiver is plugged in and you have permission.",
              file=sys.stderr)
        print("Run with sudo or install the udev rule (see: --udev-rule)",
              file=sys.stderr)
        return 1
    except DragonflyError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except usb.core.USBError as e:
        print(f"USB error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
