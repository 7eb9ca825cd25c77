import serial.tools.list_ports


def get_hw_ports():
    port_dict = dict()
    for p in list(serial.tools.list_ports.comports()):
        # Only include if there's actual hardware info (usb-serial adapters)
        if p.hwid != "n/a":
            port_dict[p.device] = tuple(p)[1:]
    return port_dict


def resolve_port(name: str) -> str:
    """Turn a port-mapping entry into a device path.

    Bare names (`ttyUSB0`) live under /dev, absolute paths and COM names are
    passed through.
    """
    if not name:
        raise ValueError("Empty serial port name.")
    if name.startswith("/") or name.upper().startswith("COM"):
        return name
    return "/dev/" + name
