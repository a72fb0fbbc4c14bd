import os
import xml.etree.ElementTree as ET
from typing import Any, Dict, List
from urllib.parse import urlsplit

from scanforge.findings import compute_fingerprint, network_signature
from scanforge.logger import setup_logger
from scanforge.models import Confidence, NormalizedFinding, ScanContext, ScannerCategory, ScanOutput, Severity
from scanforge.rate_limits import get_rate_limit_args
from scanforge.tools.base import ScannerAdapter

logger = setup_logger(__name__)


def base_url(url: str) -> str:
    """scheme://host[:port] without path or query."""
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}" if parts.scheme and parts.netloc else url


class NiktoScanner(ScannerAdapter):
    """
    Wrapper for Nikto Web Server Scanner. Reads the XML report.
    """

    name = "nikto"
    label = "Web Server Analysis"
    category = ScannerCategory.PENTEST
    # nikto exits 1 when it reported items
    findings_exit_codes = frozenset({1})
    default_timeout = 1200.0

    def build_args(self, target: str, output_file: str, context: ScanContext) -> List[str]:
        args = ["-h", target, "-Format", "xml", "-o", output_file, "-nointeractive", "-ask", "no"]
        args.extend(get_rate_limit_args("nikto", context.config.get("rate_limit_preset")))
        return args

    def scan(self, context: ScanContext) -> ScanOutput:
        targets = context.target_urls
        if not targets:
            logger.warning("No target URL configured for nikto")
            return ScanOutput(scanner=self.name, stdout="No target URLs configured")

        target = base_url(targets[0])
        output_file = os.path.join(context.work_dir, "nikto-results.xml")
        logger.info(f"Starting Nikto scan on {target}")
        output = self.run(self.build_args(target, output_file, context), context)
        output.output_file = output_file
        output.extra["report"] = self.read_report(output_file)
        output.extra["target"] = target
        return output

    def parse_output(self, output: ScanOutput) -> List[NormalizedFinding]:
        parsed = self._parse_xml(self.report_text(output))
        target = output.extra.get("target") or ""
        findings: List[NormalizedFinding] = []
        for item in parsed.get("findings", []):
            findings.append(self._convert(item, target))
        return findings

    def _convert(self, item: Dict[str, Any], target: str) -> NormalizedFinding:
        url = item.get("namelink") or (target.rstrip("/") + (item.get("uri") or "/"))
        osvdb = str(item.get("osvdb") or "0")
        rule_id = f"nikto-{item.get('id') or 'item'}"
        host = urlsplit(url).netloc
        return NormalizedFinding(
            scanner=self.name,
            rule_id=rule_id,
            # nikto carries no severity; OSVDB-referenced items are known issues
            severity=Severity.MEDIUM if osvdb not in ("", "0") else Severity.LOW,
            confidence=Confidence.MEDIUM,
            title=(item.get("description") or rule_id)[:200],
            description=item.get("description") or "",
            file_path=url,
            start_line=0,
            references=[f"https://vulners.com/osvdb/OSVDB:{osvdb}"] if osvdb not in ("", "0") else [],
            fingerprint=compute_fingerprint(rule_id, host, 0, network_signature(host, url, item.get("method"))),
            metadata={"method": item.get("method"), "osvdb": osvdb, "uri": item.get("uri")},
        )

    def _parse_xml(self, xml_content: str) -> Dict[str, Any]:
        """
        Parses Nikto XML output into a simplified dictionary.
        """
        xml_content = xml_content or ""
        # Nikto sometimes prints banner text ahead of the document
        if "<?xml" not in xml_content and "<niktoscan" in xml_content:
            xml_content = xml_content[xml_content.find("<niktoscan"):]
        if not xml_content.strip():
            return {"findings": []}

        try:
            root = ET.fromstring(xml_content)
        except ET.ParseError as e:
            logger.error(f"Failed to parse Nikto XML: {e}")
            return {"findings": [], "error": str(e)}

        result: Dict[str, Any] = {"findings": []}
        details = [root] if root.tag == "scandetails" else root.iter("scandetails")
        for scandetails in details:
            result.setdefault("target_ip", scandetails.get("targetip"))
            result.setdefault("target_hostname", scandetails.get("targethostname"))
            result.setdefault("banner", scandetails.get("targetbanner") or scandetails.get("sitename"))
            for item in scandetails.findall("item"):
                finding = {
                    "id": item.get("id"),
                    "osvdb": item.get("osvdbid"),
                    "method": item.get("method"),
                    "description": (item.findtext("description") or "").strip(),
                    "uri": (item.findtext("uri") or "").strip(),
                    "namelink": (item.findtext("namelink") or "").strip() or None,
                }
                result["findings"].append(finding)
        return result
