"""
Virtual machine and sandbox detection. Each check contributes indicators to
the scorer; only guest-side artifacts are looked at, so a host that merely
has virtualization software installed is not reported.
"""

import os

from ..decoders.text import extract_mac_addresses, parse_csv, parse_wmic_list
from ..errors import ExecutionError
from ..log import log_debug
from ..scoring import Category, Indicator, score_indicators
from .base import ProbeBase, probe

VM_EXEC_TIMEOUT_MS = 15_000

# Substrings of WMI manufacturer / model / BIOS / disk strings
WMI_INDICATORS = {
    "VMware": ("VMware",),
    "VirtualBox": ("VirtualBox", "VBOX"),
    "Hyper-V": ("Virtual Machine", "Microsoft Virtual"),
    "QEMU/KVM": ("QEMU", "KVM", "Standard PC"),
    "Parallels": ("Parallels",),
    "Xen": ("Xen", "HVM domU"),
}

WMI_QUERIES = (
    ("computersystem", "wmic computersystem get Manufacturer,Model /format:list"),
    ("BIOS", "wmic bios get Manufacturer,SerialNumber,Version /format:list"),
    ("disk", "wmic diskdrive get Model /format:list"),
)

PCI_VENDORS = {
    "VMware": ("VEN_15AD",),
    "VirtualBox": ("VEN_80EE",),
    "Hyper-V": ("VEN_1414",),
    "QEMU/KVM": ("VEN_1AF4", "VEN_1B36"),
}

MAC_PREFIXES = {
    "VMware": ("00:0C:29", "00:50:56", "00:05:69"),
    "VirtualBox": ("08:00:27", "0A:00:27"),
    "Hyper-V": ("00:15:5D",),
    "QEMU/KVM": ("52:54:00",),
    "Parallels": ("00:1C:42",),
    "Xen": ("00:16:3E",),
}

GUEST_PROCESSES = {
    "VMware": ("vmtoolsd.exe", "vmwaretray.exe", "vmacthlp.exe"),
    "VirtualBox": ("VBoxService.exe", "VBoxTray.exe", "VBoxClient.exe"),
    "QEMU/KVM": ("qemu-ga.exe",),
    "Parallels": ("prl_tools_service.exe", "prl_cc.exe", "prl_tools.exe"),
    "Sandboxie": ("SbieSvc.exe", "SbieCtrl.exe", "SandboxieDcomLaunch.exe"),
    "Wine": ("winedevice.exe",),
}

GUEST_SERVICES = {
    "VMware": ("VMTools",),
    "VirtualBox": ("VBoxService", "VBoxGuest"),
    "Hyper-V": ("vmicheartbeat", "vmicvss", "vmicshutdown"),
    "QEMU/KVM": ("QEMU-GA", "qemu-guest-agent"),
    "Parallels": ("prl_tools_service",),
    "Sandboxie": ("SbieSvc",),
    "Windows Sandbox": ("CExecSvc",),
}

# Relative to %SystemRoot%\System32
GUEST_DRIVERS = {
    "VMware": ("drivers/vmci.sys", "drivers/vmmouse.sys", "drivers/vmhgfs.sys",
               "drivers/vmusbmouse.sys", "drivers/vmx_svga.sys", "drivers/vmxnet.sys"),
    "VirtualBox": ("drivers/VBoxGuest.sys", "drivers/VBoxMouse.sys", "drivers/VBoxSF.sys",
                   "drivers/VBoxVideo.sys", "VBoxControl.exe", "VBoxTray.exe"),
    "Hyper-V": ("drivers/vmbus.sys", "drivers/VMBusHID.sys", "drivers/storvsc.sys"),
    "QEMU/KVM": ("drivers/vioscsi.sys", "drivers/viostor.sys", "drivers/vioinput.sys",
                 "drivers/vioser.sys", "drivers/balloon.sys"),
    "Parallels": ("drivers/prl_fs.sys", "drivers/prl_pv32.sys", "drivers/prl_boot.sys"),
    "Xen": ("drivers/xenbus.sys", "drivers/xenvbd.sys", "drivers/xenvif.sys"),
    "Sandboxie": ("drivers/SbieDrv.sys",),
}

GUEST_REGISTRY = {
    "VMware": (r"HKLM\SOFTWARE\VMware, Inc.\VMware Tools",
               r"HKLM\SYSTEM\CurrentControlSet\Services\VMTools"),
    "VirtualBox": (r"HKLM\SOFTWARE\Oracle\VirtualBox Guest Additions",
                   r"HKLM\HARDWARE\ACPI\DSDT\VBOX__",
                   r"HKLM\HARDWARE\ACPI\FADT\VBOX__",
                   r"HKLM\SYSTEM\CurrentControlSet\Services\VBoxGuest"),
    "Hyper-V": (r"HKLM\SOFTWARE\Microsoft\Virtual Machine\Guest\Parameters",),
    "Sandboxie": (r"HKLM\SYSTEM\CurrentControlSet\Services\SbieDrv",),
}


def running_services(sc_output: str) -> set[str]:
    """Lower-cased names of RUNNING services in `sc query state= all` output."""
    running = set()
    for block in sc_output.split("SERVICE_NAME:")[1:]:
        name = block.splitlines()[0].strip().lower() if block.strip() else ""
        if name and "RUNNING" in block:
            running.add(name)
    return running


@probe(
    "vm",
    "VM Scanner",
    "Detection of virtual machines and sandbox environments",
    "process",
)
class VmProbe(ProbeBase):
    def _cmd(self, command: str) -> str:
        try:
            return self.run_cmd(command, timeout_ms=VM_EXEC_TIMEOUT_MS)
        except ExecutionError as ex:
            log_debug(f"VM check '{command}' failed: {ex}")
            return ""

    def check_wmi(self) -> list[Indicator]:
        found: list[Indicator] = []
        seen: set[str] = set()
        for label, command in WMI_QUERIES:
            out = self._cmd(command)
            if not out:
                continue
            lowered = out.lower()
            records = parse_wmic_list(out)
            for product, needles in WMI_INDICATORS.items():
                if product in seen:
                    continue
                if any(n.lower() in lowered for n in needles):
                    first = records[0] if records else {}
                    detail = first.get("Manufacturer") or first.get("Model") or f"virtual {label}"
                    found.append(Indicator(product, Category.HARDWARE, f"{label}: {detail}"))
                    seen.add(product)
        return found

    def check_pci(self) -> list[Indicator]:
        out = self._cmd("wmic path Win32_PnPEntity get DeviceID /format:csv").upper()
        found = []
        for product, vendors in PCI_VENDORS.items():
            for vendor in vendors:
                if vendor in out:
                    found.append(Indicator(product, Category.HARDWARE, f"Virtual hardware: {vendor}"))
                    break
        return found

    def check_mac(self) -> list[Indicator]:
        out = self._cmd("getmac /FO CSV /NH")
        if not out.strip():
            out = self._cmd("wmic nic get MACAddress /format:csv")

        found = []
        for mac in extract_mac_addresses(out):
            for product, prefixes in MAC_PREFIXES.items():
                if mac.startswith(prefixes):
                    found.append(Indicator(product, Category.NETWORK, f"Virtual MAC: {mac}"))
                    break
        return found

    def check_processes(self) -> list[Indicator]:
        out = self._cmd("tasklist /FO CSV /NH")
        running = {row[0].lower() for row in parse_csv(out) if row}
        found = []
        for product, names in GUEST_PROCESSES.items():
            for name in names:
                if name.lower() in running:
                    found.append(Indicator(product, Category.GUEST_TOOLS, f"Guest process: {name}"))
        return found

    def check_services(self) -> list[Indicator]:
        running = running_services(self._cmd("sc query state= all"))
        found = []
        for product, names in GUEST_SERVICES.items():
            for name in names:
                if name.lower() in running:
                    found.append(Indicator(product, Category.GUEST_TOOLS, f"Guest service: {name}"))
        return found

    def check_drivers(self) -> list[Indicator]:
        system32 = os.path.join(self.ctx.config.windows.windows_dir, "System32")
        found = []
        for product, files in GUEST_DRIVERS.items():
            self.run.check()
            for rel in files:
                if os.path.isfile(os.path.join(system32, *rel.split("/"))):
                    found.append(Indicator(product, Category.DRIVER, f"Guest driver: {rel.rsplit('/', 1)[-1]}"))
                    break
        return found

    def check_registry(self) -> list[Indicator]:
        found = []
        for product, keys in GUEST_REGISTRY.items():
            for key in keys:
                self.run.check()
                if self._cmd(f'reg query "{key}"').strip():
                    found.append(Indicator(product, Category.REGISTRY, f"Guest key: {key}"))
                    break
        return found

    def check_environment(self) -> list[Indicator]:
        found = []
        if "wdagutility" in os.environ.get("COMPUTERNAME", "").lower():
            found.append(Indicator("Windows Sandbox", Category.ENVIRONMENT, "WDAGUtilityAccount host name"))
        if os.environ.get("WINEPREFIX") or os.environ.get("WINEDIR"):
            found.append(Indicator("Wine", Category.ENVIRONMENT, "Wine environment variables"))
        return found

    def collect(self) -> None:
        checks = (
            ("WMI hardware", self.check_wmi),
            ("PCI devices", self.check_pci),
            ("MAC addresses", self.check_mac),
            ("Guest processes", self.check_processes),
            ("Guest services", self.check_services),
            ("Guest drivers", self.check_drivers),
            ("Guest registry", self.check_registry),
            ("Environment", self.check_environment),
        )

        indicators: list[Indicator] = []
        for i, (label, check) in enumerate(checks, 1):
            self.run.check()
            self.run.progress(i, len(checks), f"Checking {label}...")
            indicators.extend(check())

        for detection in score_indicators(indicators):
            self.run.extend(detection.lines())
