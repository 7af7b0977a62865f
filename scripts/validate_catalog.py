"""
Validate the model catalog against the task taxonomy.

Local checks always run: tier/size agreement, environmental scores,
accuracy range, duplicate ids, slices unknown to the taxonomy and models
without deployment options. With --remote, each model's Hugging Face
reference is also checked for reachability.

    python scripts/validate_catalog.py [--catalog PATH] [--taxonomy PATH] [--remote] [--report FILE]
"""

import argparse
import json
import logging
import os
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import requests

from model_advisor.schemas.recommendation import ModelEntry
from model_advisor.services.model_catalog import ModelCatalog
from model_advisor.services.task_taxonomy import TaskTaxonomyLoader

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
log = logging.getLogger(__name__)

HF_API = "https://huggingface.co/api/models/"

# Issues that were corrected while loading rather than rejected
WARNING_MARKERS = ("no deployment options", "overridden", "treated as missing")


class CatalogValidator:
    def __init__(self, catalog_path: Optional[str] = None, taxonomy_path: Optional[str] = None):
        self.catalog = ModelCatalog(Path(catalog_path) if catalog_path else None)
        self.taxonomy_loader = TaskTaxonomyLoader(Path(taxonomy_path) if taxonomy_path else None)
        self.results = {
            "timestamp": datetime.now().isoformat(),
            "summary": {"total": 0, "valid": 0, "invalid": 0, "warnings": 0},
            "details": []
        }

        self.headers = {"User-Agent": "Model-Advisor-Validator/1.0"}
        hf_token = os.getenv("HF_TOKEN")
        if hf_token:
            self.headers["Authorization"] = f"Bearer {hf_token}"

    def check_reference(self, external_ref: str) -> Tuple[bool, Dict[str, Any], str]:
        """
        Look up a Hugging Face model id.
        Returns: (is_reachable, metadata, message)
        """
        time.sleep(0.2)  # stay under 5 req/s
        try:
            response = requests.get(f"{HF_API}{external_ref}", headers=self.headers, timeout=10)
        except requests.RequestException as e:
            return False, {}, str(e)

        if response.status_code == 429:
            time.sleep(2)
            return self.check_reference(external_ref)
        if response.status_code >= 400:
            return False, {}, f"HTTP {response.status_code}"

        data = response.json()
        return True, {
            "downloads": data.get("downloads", 0),
            "pipeline_tag": data.get("pipeline_tag"),
        }, "OK"

    def validate_remote(self, model: ModelEntry):
        if not model.external_ref or "/" not in model.external_ref:
            self._log_result(model.id, "reference", "warning", "No Hugging Face reference to check")
            return

        reachable, metadata, msg = self.check_reference(model.external_ref)
        if not reachable:
            self._log_result(model.id, "reference", "fail", f"{model.external_ref}: {msg}")
            return
        self._log_result(model.id, "reference", "pass", f"{metadata.get('downloads', 0)} downloads")

    def _log_result(self, model_id: str, check: str, status: str, message: str):
        self.results["details"].append({
            "model_id": model_id,
            "check": check,
            "status": status,
            "message": message
        })
        if status == "fail":
            self.results["summary"]["invalid"] += 1
            log.error(f"[FAIL] {model_id} ({check}): {message}")
        elif status == "warning":
            self.results["summary"]["warnings"] += 1
            log.warning(f"[WARN] {model_id} ({check}): {message}")
        else:
            self.results["summary"]["valid"] += 1

    def run(self, remote: bool = False) -> bool:
        if not self.taxonomy_loader.load():
            log.error("Cannot validate without a taxonomy")
            return False
        if not self.catalog.load():
            log.error("Catalog failed to load")
            return False

        self.results["summary"]["total"] = len(self.catalog)

        for issue in self.catalog.validate(self.taxonomy_loader.taxonomy):
            status = "warning" if any(w in issue for w in WARNING_MARKERS) else "fail"
            self._log_result("catalog", "structure", status, issue)

        if remote:
            for model in self.catalog.iter_models():
                log.info(f"Checking {model.id}...")
                self.validate_remote(model)

        summary = self.results["summary"]
        log.info(
            f"{summary['total']} models: {summary['invalid']} failures, {summary['warnings']} warnings"
        )
        return summary["invalid"] == 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Validate the model catalog")
    parser.add_argument("--catalog", help="Path to model_catalog.yaml")
    parser.add_argument("--taxonomy", help="Path to task_taxonomy.yaml")
    parser.add_argument("--remote", action="store_true", help="Check Hugging Face references")
    parser.add_argument("--report", help="Write a JSON report to this file")
    args = parser.parse_args()

    validator = CatalogValidator(args.catalog, args.taxonomy)
    ok = validator.run(remote=args.remote)

    if args.report:
        with open(args.report, "w", encoding="utf-8") as f:
            json.dump(validator.results, f, indent=2)
        log.info(f"Report written to {args.report}")

    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
