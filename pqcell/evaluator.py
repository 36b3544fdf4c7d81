"""
Evaluator Module

Calculates classification metrics for predicted labels and saves results
"""

import os
import logging
import pandas as pd
from datetime import datetime
from typing import Dict, Any, List, Sequence, Tuple

from .classifier import UNASSIGNED
from .utils import ensure_dir, get_timestamp


class Evaluator:
    """Evaluator for computing label assignment metrics"""

    def __init__(self, results_dir: str = "./results"):
        """Initialize evaluator"""
        self.logger = logging.getLogger(__name__)
        self.results_dir = results_dir

    def evaluate(self, true_labels: Sequence[str], predicted: Sequence[str]) -> Dict[str, Any]:
        """
        Compare predicted labels with the known ones

        Args:
            true_labels: known label per query sample
            predicted: classifier output, possibly "unassigned"

        Returns:
            Metrics dictionary: accuracy over assigned samples, overall
            accuracy, assigned fraction and per-label counts
        """
        if len(true_labels) != len(predicted):
            raise ValueError(f"{len(true_labels)} true labels for {len(predicted)} predictions")

        frame = pd.DataFrame({"true": list(map(str, true_labels)),
                              "predicted": list(map(str, predicted))})
        total = len(frame)
        assigned = frame[frame["predicted"] != UNASSIGNED]
        correct = int((assigned["true"] == assigned["predicted"]).sum())

        per_label = {}
        for label, group in frame.groupby("true", sort=True):
            group_assigned = group[group["predicted"] != UNASSIGNED]
            per_label[label] = {
                "count": len(group),
                "assigned": len(group_assigned),
                "correct": int((group_assigned["predicted"] == label).sum()),
            }

        metrics = {
            "n_queries": total,
            "n_assigned": len(assigned),
            "assigned_fraction": len(assigned) / total if total else 0.0,
            "accuracy_assigned": correct / len(assigned) if len(assigned) else 0.0,
            "accuracy_overall": correct / total if total else 0.0,
            "per_label": per_label,
        }
        self._log_evaluation_results(metrics)
        return metrics

    def save_evaluation_results(self, evaluation_results: Dict[str, Dict[str, Any]],
                                dataset_name: str, output_filename: str = None) -> Dict[str, str]:
        """Save evaluation results of one or more runs to files"""
        timestamp = get_timestamp()
        result_dir = os.path.join(self.results_dir, f"{dataset_name}_results_{timestamp}")
        ensure_dir(result_dir)

        csv_filename = output_filename if output_filename else f"evaluation_results_{timestamp}.csv"
        csv_path = os.path.join(result_dir, csv_filename)

        rows = []
        for run_name, metrics in evaluation_results.items():
            row = {"run_name": run_name}
            row.update({k: v for k, v in metrics.items() if k != "per_label"})
            rows.append(row)
        pd.DataFrame(rows).to_csv(csv_path, index=False)

        report_path = os.path.join(result_dir, f"evaluation_report_{timestamp}.txt")
        with open(report_path, 'w', encoding='utf-8') as f:
            f.write(self._generate_simple_report(evaluation_results, dataset_name))

        self.logger.info(f"Results saved to: {result_dir}")
        return {
            "csv_path": csv_path,
            "report_path": report_path,
            "result_dir": result_dir
        }

    def get_best_metrics(self, evaluation_results: Dict[str, Dict[str, Any]]) -> Dict[str, Tuple[str, float]]:
        """Find the best run for each numeric metric (higher is better)"""
        best_metrics = {}
        for run_name, metrics in evaluation_results.items():
            for metric_name, value in metrics.items():
                if metric_name.startswith("n_") or not isinstance(value, (int, float)):
                    continue
                if metric_name not in best_metrics or value > best_metrics[metric_name][1]:
                    best_metrics[metric_name] = (run_name, value)
        return best_metrics

    def _generate_simple_report(self, evaluation_results: Dict[str, Dict[str, Any]],
                                dataset_name: str) -> str:
        """Generate simple evaluation report"""
        lines = []
        lines.append("=" * 80)
        lines.append(f"Label Assignment Report - {dataset_name}")
        lines.append("=" * 80)
        lines.append(f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        lines.append(f"Runs evaluated: {len(evaluation_results)}")
        lines.append("")

        for run_name, metrics in evaluation_results.items():
            lines.append(f"Run: {run_name}")
            lines.append("-" * 40)
            for key, value in metrics.items():
                if key == "per_label":
                    continue
                if isinstance(value, float):
                    lines.append(f"  {key}: {value:.4f}")
                else:
                    lines.append(f"  {key}: {value}")
            per_label = metrics.get("per_label", {})
            if per_label:
                lines.append("  Per label (count / assigned / correct):")
                for label, counts in per_label.items():
                    lines.append(f"    {label}: {counts['count']} / {counts['assigned']} / {counts['correct']}")
            lines.append("")

        return "\n".join(lines)

    def _log_evaluation_results(self, metrics: Dict[str, Any]) -> None:
        """Log evaluation results"""
        self.logger.info("Evaluation results:")
        self.logger.info(f"  Assigned: {metrics['n_assigned']}/{metrics['n_queries']} "
                         f"({metrics['assigned_fraction']:.4f})")
        self.logger.info(f"  Accuracy (assigned): {metrics['accuracy_assigned']:.4f}")
        self.logger.info(f"  Accuracy (overall): {metrics['accuracy_overall']:.4f}")
