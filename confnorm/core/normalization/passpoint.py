from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import unquote

from confnorm.core.parsing.tree import ParseTree

log = logging.getLogger("confnorm.pipeline")

SCHEMA_VERSION = "1.0"
WIFI_PAYLOAD_TYPE = "com.apple.wifi.managed"

# IANA EAP method type numbers.
EAP_METHOD_NAMES: Dict[int, str] = {
    4: "MD5",
    13: "TLS",
    17: "LEAP",
    18: "SIM",
    21: "TTLS",
    23: "AKA",
    25: "PEAP",
    26: "MSCHAPV2",
    43: "FAST",
    50: "AKA_PRIME",
}
_SIM_METHODS = frozenset({18, 23, 50})

_HEX_RE = re.compile(r"^[0-9A-Fa-f]+$")

_WIFI_HINT_KEYS = ("SSID_STR", "DomainName", "RoamingConsortiumOIs", "NAIRealmNames", "IsHotspot")
_SCHEMA_STYLE_KEYS = ("home-friendly-name", "home-domain", "home-ois", "roaming-consortiums", "realm")


@dataclass(frozen=True, slots=True)
class MappingResult:
    """Canonical Passpoint profile plus provenance.

    - source: "apple_profile" | "wifi_payload" | "wba_attributes" | "passpoint_schema" | None
    - missing: dotted names of canonical fields left empty

    """

    profile: Dict[str, Any]
    source: Optional[str]
    missing: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {"profile": self.profile, "source": self.source, "missing": list(self.missing)}


def empty_profile() -> Dict[str, Any]:
    return {
        "version": SCHEMA_VERSION,
        "passpoint_profile": {
            "home_friendly_name": "",
            "home_domain": "",
            "other_home_partner_fqdns": [],
            "home_ois": [],
            "roaming_consortiums": [],
            "nai_realm": {"name": "", "eap_methods": []},
            "credential": {
                "type": "",
                "username": "",
                "password": "",
                "realm": "",
                "certificate_payload_uuid": "",
            },
            "anqp_domain_id": "0",
            "ip_address_type_availability": {"ipv4": "Unknown", "ipv6": "Unknown"},
            "venue_info": {"group": "", "type": "", "name": "", "language": "eng"},
            "plmn_list": [],
            "wan_metrics": {
                "link_status": "Up",
                "symmetric_link": "Unknown",
                "at_capacity": False,
                "downlink_speed": 0,
                "uplink_speed": 0,
                "downlink_load": 0,
                "uplink_load": 0,
                "lmd": 0,
            },
            "osu_providers": [],
        },
    }


def _get(obj: Any, path: str, default: Any = None) -> Any:
    current = obj
    for key in path.split("."):
        if isinstance(current, Mapping) and key in current:
            current = current[key]
        else:
            return default
    return current


def _as_list(value: Any) -> List[Any]:
    if value is None or value == "":
        return []
    if isinstance(value, list):
        return value
    return [value]


def _split_encoded_list(value: Any) -> List[str]:
    """Percent-decode and split a comma list ("112233%2C445566" -> two items)."""

    out: List[str] = []
    for item in _as_list(value):
        for part in unquote(str(item)).split(","):
            part = part.strip()
            if part:
                out.append(part)
    return out


def organization_identifier(value: str, name: str) -> Optional[Dict[str, Any]]:
    """OI record; `length` is in octets. Non-hex values are rejected."""

    value = str(value).strip()
    if not value or not _HEX_RE.match(value):
        log.debug("passpoint_invalid_oi", extra={"oi_name": name})
        return None
    return {
        "name": name,
        "value": value,
        "length": len(value) // 2,
        "organization_id": value[:6],
    }


def _home_ois(values: Iterable[Any]) -> List[Dict[str, Any]]:
    out = []
    for index, value in enumerate(values):
        oi = organization_identifier(value, f"Home OI {index + 1}")
        if oi is not None:
            out.append(oi)
    return out


def _roaming_consortiums(values: Iterable[Any]) -> List[Dict[str, Any]]:
    out = []
    for value in values:
        oi = organization_identifier(value, f"Consortium {value}")
        if oi is not None:
            out.append(oi)
    return out


def _eap_number(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def eap_method(number: int, inner_auth: Optional[str] = None) -> Dict[str, Any]:
    return {
        "eap_type": EAP_METHOD_NAMES.get(number, f"EAP-{number}"),
        "eap_method": number,
        "inner_auth": inner_auth,
    }


_SYMMETRIC_LINK = {0: "Asymmetric", 1: "Symmetric"}


def _wan_metrics(wan: Mapping[str, Any]) -> Dict[str, Any]:
    link = wan.get("SymmetricLink")
    return {
        "link_status": wan.get("LinkStatus", "Up"),
        "symmetric_link": _SYMMETRIC_LINK.get(link, "Unknown") if isinstance(link, int) else "Unknown",
        "at_capacity": bool(wan.get("AtCapacity", False)),
        "downlink_speed": wan.get("DownlinkSpeed", 0),
        "uplink_speed": wan.get("UplinkSpeed", 0),
        "downlink_load": wan.get("DownlinkLoad", 0),
        "uplink_load": wan.get("UplinkLoad", 0),
        "lmd": wan.get("LMD", 0),
    }


def _osu_provider(device: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "server_uri": str(device.get("ServerURI") or ""),
        "method_list": _as_list(device.get("MethodList")),
        "friendly_name": str(device.get("FriendlyName") or ""),
        "icon_url": "",
        "nai": str(_get(device, "OSUIdentity.NAI") or ""),
        "description": str(device.get("Description") or ""),
    }


def _credential_type(eap_numbers: List[int], *, username: str, has_certificate: bool) -> str:
    if 13 in eap_numbers and has_certificate:
        return "TLSClientCertificate"
    if any(n in _SIM_METHODS for n in eap_numbers):
        return "SIM"
    if username:
        return "UsernamePassword"
    if 13 in eap_numbers:
        return "TLSClientCertificate"
    return ""


# ---------------------------------------------------------------------------
# Source selection
# ---------------------------------------------------------------------------


def select_wifi_payload(payloads: List[Any]) -> Optional[Mapping[str, Any]]:
    """Pick the Wi-Fi payload of an Apple profile.

    Encrypted Wi-Fi payloads carrying Hotspot 2.0 hints win over plain ones.

    """

    wifi = [
        p
        for p in payloads
        if isinstance(p, Mapping)
        and p.get("PayloadType") == WIFI_PAYLOAD_TYPE
        and p.get("EncryptionType") != "None"
    ]
    for p in wifi:
        if p.get("IsHotspot") is True or p.get("NAIRealmNames") or p.get("RoamingConsortiumOIs"):
            return p
    return wifi[0] if wifi else None


def _is_wifi_payload(tree: Mapping[str, Any]) -> bool:
    return tree.get("PayloadType") == WIFI_PAYLOAD_TYPE or any(k in tree for k in _WIFI_HINT_KEYS)


def _schema_style_root(tree: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
    for candidate in (tree, tree.get("passpoint"), tree.get("passpoint-properties")):
        if isinstance(candidate, Mapping) and any(k in candidate for k in _SCHEMA_STYLE_KEYS):
            return candidate
    return None


# ---------------------------------------------------------------------------
# Per-source mapping
# ---------------------------------------------------------------------------


def _map_wifi_payload(payload: Mapping[str, Any], pp: Dict[str, Any]) -> None:
    pp["home_friendly_name"] = str(payload.get("DisplayedOperatorName") or payload.get("SSID_STR") or "")
    domain = str(payload.get("DomainName") or "")
    pp["home_domain"] = domain
    pp["home_ois"] = _home_ois(_as_list(payload.get("HomeOIs")))
    pp["roaming_consortiums"] = _roaming_consortiums(_as_list(payload.get("RoamingConsortiumOIs")))

    realms = [str(r) for r in _as_list(payload.get("NAIRealmNames")) if r]
    realm = realms[0] if realms else domain
    pp["nai_realm"]["name"] = realm
    pp["credential"]["realm"] = realm

    eap = _get(payload, "EAPClientConfiguration", {}) or {}
    numbers = [n for n in (_eap_number(v) for v in _as_list(_get(eap, "AcceptEAPTypes"))) if n is not None]
    methods = []
    for n in numbers:
        inner = None
        if n == 21:
            inner = _get(eap, "TTLSInnerAuthentication")
        elif n == 25:
            inner = _get(eap, "InnerAuthentication", "MSCHAPv2")
        methods.append(eap_method(n, inner))
    pp["nai_realm"]["eap_methods"] = methods

    username = str(_get(eap, "UserName") or "")
    cert_uuid = payload.get("PayloadCertificateUUID") or _get(eap, "PayloadCertificateUUID")
    if isinstance(cert_uuid, list):
        cert_uuid = cert_uuid[0] if cert_uuid else None
    cred_type = _credential_type(numbers, username=username, has_certificate=bool(cert_uuid))
    cred = pp["credential"]
    cred["type"] = cred_type
    if cred_type == "TLSClientCertificate":
        cred["certificate_payload_uuid"] = str(cert_uuid or "")
    else:
        cred["username"] = username
        cred["password"] = str(_get(eap, "UserPassword") or "")

    if payload.get("ANQPDomainID") is not None:
        pp["anqp_domain_id"] = str(payload.get("ANQPDomainID"))

    if payload.get("VenueName"):
        pp["venue_info"]["name"] = str(payload.get("VenueName"))
    wan = payload.get("WANMetrics")
    if isinstance(wan, Mapping):
        pp["wan_metrics"] = _wan_metrics(wan)
    devices = payload.get("OSUDevices")
    if isinstance(devices, list):
        pp["osu_providers"] = [_osu_provider(d) for d in devices if isinstance(d, Mapping)]


def _map_wba_attributes(attrs: Mapping[str, Any], pp: Dict[str, Any]) -> None:
    pp["home_friendly_name"] = str(attrs.get("friendly_name") or attrs.get("home_friendly_name") or "")
    domains = _split_encoded_list(attrs.get("domain"))
    if domains:
        pp["home_domain"] = domains[0]
        pp["other_home_partner_fqdns"] = domains[1:]
    pp["home_ois"] = _home_ois(_split_encoded_list(attrs.get("home_ois")))
    pp["roaming_consortiums"] = _roaming_consortiums(_split_encoded_list(attrs.get("roaming_consortiums")))

    realm = unquote(str(attrs.get("realm") or ""))
    pp["nai_realm"]["name"] = realm
    numbers = [n for n in (_eap_number(v) for v in _split_encoded_list(attrs.get("eap_method"))) if n is not None]
    pp["nai_realm"]["eap_methods"] = [eap_method(n) for n in numbers]

    username = unquote(str(attrs.get("username") or ""))
    cred = pp["credential"]
    cred["realm"] = realm
    cred["username"] = username
    cred["password"] = str(attrs.get("password") or "")
    # The WBA attribute set describes a certificate credential.
    cred["type"] = "UsernamePassword" if cred["password"] else "TLSClientCertificate"


def _map_schema_style(props: Mapping[str, Any], pp: Dict[str, Any]) -> None:
    pp["home_friendly_name"] = str(props.get("home-friendly-name") or "")
    pp["home_domain"] = str(props.get("home-domain") or "")
    pp["other_home_partner_fqdns"] = [str(f) for f in _as_list(props.get("other-home-partner-fqdns")) if f]

    home_values = []
    for item in _as_list(props.get("home-ois")):
        home_values.append(item.get("home-oi") if isinstance(item, Mapping) else item)
    pp["home_ois"] = _home_ois(v for v in home_values if v)
    pp["roaming_consortiums"] = _roaming_consortiums(_as_list(props.get("roaming-consortiums")))

    realm = str(props.get("realm") or "")
    pp["nai_realm"]["name"] = realm
    numbers = [n for n in (_eap_number(v) for v in _as_list(props.get("eap-method"))) if n is not None]
    pp["nai_realm"]["eap_methods"] = [eap_method(n) for n in numbers]

    username = str(props.get("username") or "")
    cred = pp["credential"]
    cred["realm"] = realm
    cred["username"] = username
    cred["type"] = _credential_type(numbers, username=username, has_certificate=13 in numbers)


def _missing_fields(pp: Mapping[str, Any]) -> Tuple[str, ...]:
    checks = {
        "home_friendly_name": pp["home_friendly_name"],
        "home_domain": pp["home_domain"],
        "home_ois": pp["home_ois"],
        "roaming_consortiums": pp["roaming_consortiums"],
        "nai_realm.name": pp["nai_realm"]["name"],
        "nai_realm.eap_methods": pp["nai_realm"]["eap_methods"],
        "credential.type": pp["credential"]["type"],
        "credential.username": pp["credential"]["username"],
    }
    return tuple(name for name, value in checks.items() if not value)


def map_to_passpoint(tree: ParseTree) -> MappingResult:
    """Map a parse tree from any recognised source into the canonical profile.

    Recognised sources, in order:
    - Apple profile with a `PayloadContent` list
    - WBA Passpoint attribute set under `passpoint:` (percent-encoded comma lists)
    - Passpoint schema-style hyphenated keys
    - a bare Wi-Fi payload mapping

    Unrecognised trees yield an empty profile with every field listed as missing.

    Time:  O(n) over the selected payload
    Space: O(n)
    """

    profile = empty_profile()
    pp = profile["passpoint_profile"]
    source: Optional[str] = None

    if isinstance(tree, Mapping):
        payloads = tree.get("PayloadContent")
        wba = tree.get("passpoint")
        schema_root = _schema_style_root(tree)
        if isinstance(payloads, list):
            payload = select_wifi_payload(payloads)
            if payload is not None:
                _map_wifi_payload(payload, pp)
                source = "apple_profile"
        elif isinstance(wba, Mapping) and any(k in wba for k in ("home_ois", "roaming_consortiums", "domain")):
            _map_wba_attributes(wba, pp)
            source = "wba_attributes"
        elif schema_root is not None:
            _map_schema_style(schema_root, pp)
            source = "passpoint_schema"
        elif _is_wifi_payload(tree):
            _map_wifi_payload(tree, pp)
            source = "wifi_payload"

    missing = _missing_fields(pp)
    log.info("passpoint_mapped", extra={"mapping_source": source, "missing_count": len(missing)})
    return MappingResult(profile=profile, source=source, missing=missing)
