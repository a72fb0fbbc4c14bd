import os
import re
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from scanforge.findings import compute_fingerprint
from scanforge.logger import setup_logger
from scanforge.models import Confidence, NormalizedFinding, ScanContext, ScannerCategory, ScanOutput, Severity
from scanforge.tools.base import ScannerAdapter

logger = setup_logger(__name__)

LEGACY_PROTOCOLS = {
    "SSLv2": Severity.HIGH,
    "SSLv3": Severity.HIGH,
    "TLSv1.0": Severity.MEDIUM,
    "TLSv1.1": Severity.MEDIUM,
}

_PROTO_LINE = re.compile(r"^(SSLv2|SSLv3|TLSv1\.?0|TLSv1\.?1|TLSv1\.?2|TLSv1\.?3)\s+(enabled|disabled)", re.I)


def _normalize_protocol(name: str) -> str:
    name = name.strip()
    upper = name.upper()
    if upper.startswith("SSL"):
        return "SSLv" + upper[4:]
    if upper.startswith("TLSV1"):
        rest = upper[5:].lstrip(".") or "0"
        return f"TLSv1.{rest}"
    return name


def tls_endpoint(url: str) -> Optional[Tuple[str, int]]:
    parts = urlsplit(url)
    if parts.scheme != "https" or not parts.hostname:
        return None
    return parts.hostname, parts.port or 443


class SslscanScanner(ScannerAdapter):
    """
    Wrapper for sslscan TLS configuration checks. Plain-HTTP targets are skipped.
    """

    name = "sslscan"
    label = "SSL/TLS Analysis"
    category = ScannerCategory.PENTEST
    default_timeout = 300.0

    def scan(self, context: ScanContext) -> ScanOutput:
        targets = context.target_urls
        endpoint = tls_endpoint(targets[0]) if targets else None
        if endpoint is None:
            logger.info("No HTTPS target; skipping sslscan")
            return ScanOutput(scanner=self.name, stdout="No HTTPS target configured")

        host, port = endpoint
        target = f"{host}:{port}"
        output_file = os.path.join(context.work_dir, "sslscan-results.xml")
        logger.info(f"Starting sslscan on {target}")
        output = self.run(["--no-colour", f"--xml={output_file}", target], context)
        output.output_file = output_file
        output.extra["report"] = self.read_report(output_file)
        output.extra["target"] = target
        return output

    def parse_output(self, output: ScanOutput) -> List[NormalizedFinding]:
        target = output.extra.get("target") or ""
        summary = self._parse_xml(output.extra.get("report") or "")
        if summary is None:
            # no usable XML; fall back to the text report
            summary = self._parse_summary(output.stdout)
        return self._findings(summary, target)

    def _parse_xml(self, content: str) -> Optional[Dict[str, Any]]:
        if not (content or "").strip():
            return None
        try:
            root = ET.fromstring(content)
        except ET.ParseError as e:
            logger.error(f"Failed to parse sslscan XML: {e}")
            return None
        test = root.find("ssltest")
        if test is None:
            test = root
        protocols = []
        for proto in test.findall("protocol"):
            kind = (proto.get("type") or "").upper()
            version = proto.get("version") or ""
            label = _normalize_protocol(f"{'SSLv' if kind == 'SSL' else 'TLSv'}{version}")
            protocols.append({"protocol": label, "status": "enabled" if proto.get("enabled") == "1" else "disabled"})

        weak_ciphers = [
            c.get("cipher")
            for c in test.findall("cipher")
            if c.get("status") in ("accepted", "preferred") and (c.get("strength") or "") in ("null", "anonymous", "weak")
        ]
        heartbleed = [h.get("sslversion") for h in test.findall("heartbleed") if h.get("vulnerable") == "1"]
        reneg = test.find("renegotiation")
        compression = test.find("compression")
        cert = test.find(".//certificate")
        return {
            "protocols": protocols,
            "weak_ciphers": [c for c in weak_ciphers if c],
            "heartbleed": [h for h in heartbleed if h],
            "insecure_renegotiation": reneg is not None and reneg.get("supported") == "1" and reneg.get("secure") == "0",
            "compression": compression is not None and compression.get("supported") == "1",
            "expired": cert is not None and (cert.findtext("expired") or "").strip() == "true",
            "self_signed": cert is not None and (cert.findtext("self-signed") or "").strip() == "true",
        }

    def _parse_summary(self, output: str) -> Dict[str, Any]:
        """
        Best-effort summary extraction from sslscan text output.
        """
        protocols: List[Dict[str, Any]] = []
        #   SSLv3      enabled
        #   TLSv1.0    enabled
        for line in (output or "").splitlines():
            m = _PROTO_LINE.search(line.strip())
            if m:
                protocols.append({"protocol": _normalize_protocol(m.group(1)), "status": m.group(2).lower()})
        return {"protocols": protocols}

    def _finding(self, target: str, rule_id: str, severity: Severity, title: str, description: str, **extra) -> NormalizedFinding:
        return NormalizedFinding(
            scanner=self.name,
            rule_id=rule_id,
            severity=severity,
            confidence=Confidence.HIGH,
            title=title,
            description=description,
            file_path=f"https://{target}" if target else "",
            start_line=0,
            fingerprint=compute_fingerprint(rule_id, target, 0, extra.get("metadata", {}).get("detail")),
            cwe_ids=extra.get("cwe_ids", []),
            cve_ids=extra.get("cve_ids", []),
            owasp_ids=["A02:2021"],
            fix=extra.get("fix"),
            metadata=extra.get("metadata", {}),
        )

    def _findings(self, summary: Dict[str, Any], target: str) -> List[NormalizedFinding]:
        findings: List[NormalizedFinding] = []
        for proto in summary.get("protocols", []):
            severity = LEGACY_PROTOCOLS.get(proto["protocol"])
            if severity is None or proto["status"] != "enabled":
                continue
            findings.append(
                self._finding(
                    target,
                    f"legacy-protocol-{proto['protocol'].lower()}",
                    severity,
                    f"Deprecated protocol {proto['protocol']} enabled",
                    f"The server accepts {proto['protocol']} connections, which have known cryptographic weaknesses.",
                    cwe_ids=["CWE-327"],
                    fix="Disable SSLv2, SSLv3, TLS 1.0 and TLS 1.1; serve TLS 1.2 or newer only.",
                    metadata={"protocol": proto["protocol"]},
                )
            )
        if summary.get("weak_ciphers"):
            ciphers = summary["weak_ciphers"]
            findings.append(
                self._finding(
                    target,
                    "weak-cipher-suites",
                    Severity.MEDIUM,
                    "Weak cipher suites accepted",
                    f"The server accepts {len(ciphers)} weak, null or anonymous cipher suite(s).",
                    cwe_ids=["CWE-326"],
                    fix="Restrict the cipher list to AEAD suites with forward secrecy.",
                    metadata={"ciphers": ciphers},
                )
            )
        for version in summary.get("heartbleed", []):
            findings.append(
                self._finding(
                    target,
                    "heartbleed",
                    Severity.CRITICAL,
                    f"Heartbleed ({version})",
                    "The server is vulnerable to the OpenSSL Heartbleed memory disclosure.",
                    cwe_ids=["CWE-125"],
                    cve_ids=["CVE-2014-0160"],
                    fix="Upgrade OpenSSL and rotate the server's private keys.",
                    metadata={"detail": version},
                )
            )
        if summary.get("insecure_renegotiation"):
            findings.append(
                self._finding(
                    target,
                    "insecure-renegotiation",
                    Severity.MEDIUM,
                    "Insecure TLS renegotiation supported",
                    "Client-initiated insecure renegotiation is supported.",
                    cwe_ids=["CWE-310"],
                    cve_ids=["CVE-2009-3555"],
                )
            )
        if summary.get("compression"):
            findings.append(
                self._finding(
                    target,
                    "tls-compression",
                    Severity.MEDIUM,
                    "TLS compression enabled",
                    "TLS-level compression exposes the connection to the CRIME attack.",
                    cwe_ids=["CWE-310"],
                    cve_ids=["CVE-2012-4929"],
                )
            )
        if summary.get("expired"):
            findings.append(
                self._finding(
                    target,
                    "certificate-expired",
                    Severity.HIGH,
                    "Expired TLS certificate",
                    "The certificate presented by the server has expired.",
                    cwe_ids=["CWE-298"],
                )
            )
        if summary.get("self_signed"):
            findings.append(
                self._finding(
                    target,
                    "certificate-self-signed",
                    Severity.MEDIUM,
                    "Self-signed TLS certificate",
                    "The certificate presented by the server is self-signed.",
                    cwe_ids=["CWE-295"],
                )
            )
        return findings
