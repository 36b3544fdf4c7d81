#!/usr/bin/env python3
"""
pqcell Main Program

Workflow:
    1. Build: python main.py --mode build --reference ref.csv --metadata ref_meta.csv --name baron --m_values 50,100
    2. Search: python main.py --mode search --index baron_m100_k42 --query query.csv --w 3
    3. Classify: python main.py --mode classify --index baron_m100_k42,segerstolpe_m100_k40 --query query.csv
    4. List: python main.py --list-indexes
"""

import argparse
import logging
import os
import sys
from typing import Any, Dict, List, Optional

import pandas as pd

from pqcell import (
    DataManager, PQBuilder, PQSearcher, Classifier, Evaluator, PQCellError,
    load_config, setup_logging, print_system_info, ensure_dir, get_timestamp
)


def parse_arguments() -> argparse.Namespace:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Product quantization cell classification",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python main.py --mode build --reference ref.csv --metadata ref_meta.csv --name ref --m_values 100
    python main.py --mode search --index ref_m100_k42 --query query.csv --w 5
    python main.py --mode classify --index ref_m100_k42 --query query.csv --threshold 0.6
    python main.py --list-indexes
        """
    )

    parser.add_argument("--mode", type=str, choices=["build", "search", "classify"],
                        help="Mode: build, search or classify")

    # Build mode parameters
    parser.add_argument("--reference", type=str,
                        help="Reference expression file (required for build mode)")
    parser.add_argument("--metadata", type=str,
                        help="Sample metadata table holding the label column")
    parser.add_argument("--label-column", type=str, default="cell_type1",
                        help="Label column in the metadata table (default: cell_type1)")
    parser.add_argument("--name", type=str,
                        help="Dataset name used to name built indexes")
    parser.add_argument("--m_values", type=str, default=None,
                        help="M values, comma-separated (default: from config)")
    parser.add_argument("--k_values", type=str, default=None,
                        help="K values, comma-separated (default: floor(sqrt(#samples)))")

    # Search / classify parameters
    parser.add_argument("--index", type=str,
                        help="Index names, comma-separated, searched in this order")
    parser.add_argument("--query", type=str,
                        help="Query expression file")
    parser.add_argument("--query-metadata", type=str,
                        help="Query metadata with known labels, enables evaluation")
    parser.add_argument("--w", type=int, default=None,
                        help="Neighbours per query sample (default: from config)")
    parser.add_argument("--threshold", type=float, default=None,
                        help="Similarity threshold for assignment (default: from config)")
    parser.add_argument("--output", type=str, default=None,
                        help="Output filename")

    parser.add_argument("--log_level", type=str, default=None,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Log level (default: from config)")

    # Special operations
    parser.add_argument("--list-indexes", action="store_true",
                        help="List built indexes")
    parser.add_argument("--check-dataset", type=str,
                        help="Print statistics of an expression file")
    parser.add_argument("--config", type=str, default="configs/default_config.yaml",
                        help="Config file path")

    return parser.parse_args()


def parse_list_parameter(param_str: Optional[str]) -> List[int]:
    """Parse comma-separated parameter list"""
    if not param_str:
        return []
    return [int(x.strip()) for x in param_str.split(",") if x.strip()]


def main():
    """Main function"""
    args = parse_arguments()
    config = load_config(args.config if os.path.exists(args.config) else None)
    setup_logging(args.log_level or config["logging"]["level"], config["logging"]["file"])
    logger = logging.getLogger(__name__)

    logger.info("=" * 80)
    logger.info("pqcell Starting")
    logger.info("=" * 80)

    print_system_info()

    try:
        if args.list_indexes:
            list_built_indexes(config)
            return

        if args.check_dataset:
            check_dataset(args.check_dataset)
            return

        if not args.mode:
            logger.error("Must specify mode --mode (build/search/classify)")
            sys.exit(1)

        if args.mode == "build":
            run_build_mode(args, config)
        elif args.mode == "search":
            run_search_mode(args, config)
        elif args.mode == "classify":
            run_classify_mode(args, config)

        logger.info("Program completed!")

    except KeyboardInterrupt:
        logger.info("Program interrupted by user")
        sys.exit(0)
    except (PQCellError, FileNotFoundError, ValueError) as e:
        logger.error(f"Program failed: {str(e)}")
        sys.exit(1)


def list_built_indexes(config: Dict[str, Any]):
    """List built indexes"""
    logger = logging.getLogger(__name__)

    builder = PQBuilder(config["paths"]["indexes_dir"], config)
    indexes = builder.list_built_indexes()

    if not indexes:
        logger.info("No built indexes found")
        return

    logger.info(f"Built indexes ({len(indexes)} total):")
    logger.info("-" * 80)
    for info in indexes:
        logger.info(f"Index: {info['index_name']}")
        logger.info(f"  Dataset: {info.get('dataset') or 'Unknown'}")
        logger.info(f"  Parameters: M={info['n_chunks']}, K={info['n_clusters']}")
        logger.info(f"  Reference samples: {info['n_samples']}")
        logger.info(f"  Failed chunks: {len(info['failed_chunks'])}")
        if info.get("index_size_mb") is not None:
            logger.info(f"  Size: {info['index_size_mb']:.2f} MB")
        logger.info("")


def check_dataset(path: str):
    """Print expression file statistics"""
    logger = logging.getLogger(__name__)

    data_manager = DataManager()
    view = data_manager.load_expression(path)
    stats = data_manager.get_dataset_stats(view)

    logger.info(f"Dataset: {path}")
    logger.info("-" * 60)
    logger.info(f"  Features: {stats['num_features']}")
    logger.info(f"  Samples: {stats['num_samples']}")
    logger.info(f"  Data type: {stats['data_type']}")
    logger.info(f"  Zero fraction: {stats['zero_fraction']:.4f}")
    logger.info(f"  Memory usage: {stats['total_memory_mb']:.2f} MB")


def run_build_mode(args: argparse.Namespace, config: Dict[str, Any]):
    """Run build mode"""
    logger = logging.getLogger(__name__)
    if not args.reference or not args.name:
        logger.error("Build mode requires --reference and --name parameters")
        sys.exit(1)

    data_manager = DataManager()
    builder = PQBuilder(config["paths"]["indexes_dir"], config)

    reference = data_manager.load_expression(args.reference, args.metadata, args.label_column)
    m_values = parse_list_parameter(args.m_values) or [config["index"]["n_chunks"]]
    k_values = parse_list_parameter(args.k_values) or [config["index"]["n_clusters"]]

    build_results = builder.build_indexes(reference, args.name, m_values, k_values)

    summary = builder.get_build_summary(build_results)
    logger.info("\nBuild summary:")
    logger.info(f"  Total indexes: {summary['total_indexes']}")
    logger.info(f"  Successfully built: {summary['successful_indexes']}")
    logger.info(f"  Already exists: {summary['existing_indexes']}")
    logger.info(f"  Build failed: {summary['failed_indexes']}")
    logger.info(f"  Total time: {summary['total_build_time']:.2f}s")
    logger.info(f"  Success rate: {summary['success_rate']:.1f}%")


def _search(args: argparse.Namespace, config: Dict[str, Any]):
    logger = logging.getLogger(__name__)
    if not args.index or not args.query:
        logger.error(f"{args.mode.capitalize()} mode requires --index and --query parameters")
        sys.exit(1)

    index_names = [name.strip() for name in args.index.split(",") if name.strip()]
    searcher = PQSearcher(config["paths"]["indexes_dir"], config)
    indexes = [searcher.load_index(name) for name in index_names]
    query = DataManager().load_expression(args.query, args.query_metadata, args.label_column)
    result = searcher.search(indexes, query, args.w)
    return index_names, indexes, query, result


def run_search_mode(args: argparse.Namespace, config: Dict[str, Any]):
    """Run search mode"""
    logger = logging.getLogger(__name__)
    index_names, _, _, result = _search(args, config)

    frame = result.to_dataframe()
    frame["dataset"] = [index_names[d] for d in frame["dataset"]]
    output_path = _output_path(config, args.output, "neighbors")
    frame.to_csv(output_path, index=False)
    logger.info(f"Neighbours saved: {output_path}")


def run_classify_mode(args: argparse.Namespace, config: Dict[str, Any]):
    """Run classify mode"""
    logger = logging.getLogger(__name__)
    index_names, indexes, query, result = _search(args, config)

    missing = [name for name, index in zip(index_names, indexes) if index.sample_labels is None]
    if missing:
        logger.error(f"Indexes built without reference labels: {missing}")
        sys.exit(1)

    classifier = Classifier(args.threshold, config)
    labels = classifier.classify([index.sample_labels for index in indexes], result)

    output_path = _output_path(config, args.output, "labels")
    pd.DataFrame({
        "query": query.names(),
        "label": labels,
        "similarity": result.similarities[0],
    }).to_csv(output_path, index=False)
    logger.info(f"Labels saved: {output_path}")

    if query.sample_labels is not None:
        evaluator = Evaluator(config["paths"]["results_dir"])
        metrics = evaluator.evaluate(query.sample_labels, labels)
        output_dir = evaluator.save_evaluation_results({"+".join(index_names): metrics},
                                                       dataset_name=os.path.basename(args.query))
        logger.info(f"  CSV: {output_dir['csv_path']}")
        logger.info(f"  Report: {output_dir['report_path']}")


def _output_path(config: Dict[str, Any], output: Optional[str], kind: str) -> str:
    results_dir = config["paths"]["results_dir"]
    ensure_dir(results_dir)
    return os.path.join(results_dir, output or f"{kind}_{get_timestamp()}.csv")


if __name__ == "__main__":
    main()
