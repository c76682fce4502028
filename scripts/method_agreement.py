"""Compare k-means and hierarchical cluster assignments.

Reads the exported cluster_assignments.csv, writes the cross-tabulation of
the two label sets and reports their adjusted Rand index.
"""
from __future__ import annotations

import argparse
from pathlib import Path

import pandas as pd
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import seaborn as sns
from sklearn.metrics import adjusted_rand_score

from la_price_clusters.utils import KMEANS_COL, HCLUST_COL


def load_assignments(path: Path) -> pd.DataFrame:
    if not path.exists():
        raise FileNotFoundError(path)
    df = pd.read_csv(path)
    missing = [c for c in (KMEANS_COL, HCLUST_COL) if c not in df.columns]
    if missing:
        raise KeyError(f"{path} is missing columns {missing}")
    return df


def agreement_table(df: pd.DataFrame) -> pd.DataFrame:
    return pd.crosstab(df[KMEANS_COL], df[HCLUST_COL])


def main() -> None:
    parser = argparse.ArgumentParser(description='Agreement between k-means and hierarchical clusters')
    parser.add_argument('--assignments', type=Path, default=Path('results/cluster_assignments.csv'))
    parser.add_argument('--output-dir', type=Path, default=Path('results'))
    parser.add_argument('--no-plot', action='store_true', help='Skip the heatmap')
    args = parser.parse_args()

    df = load_assignments(args.assignments)
    table = agreement_table(df)
    ari = adjusted_rand_score(df[KMEANS_COL], df[HCLUST_COL])

    args.output_dir.mkdir(parents=True, exist_ok=True)
    table_path = args.output_dir / 'method_agreement.csv'
    table.to_csv(table_path)
    print(table)
    print(f"\nAdjusted Rand index: {ari:.3f}")
    print(f"Cross-tabulation saved to {table_path}")

    if not args.no_plot:
        sns.set_theme(style='white')
        fig, ax = plt.subplots(figsize=(5, 4))
        sns.heatmap(table, annot=True, fmt='d', cmap='Blues', ax=ax)
        ax.set_xlabel('Hierarchical cluster')
        ax.set_ylabel('k-means cluster')
        ax.set_title(f'Method agreement (ARI = {ari:.2f})')
        fig.tight_layout()
        fig_path = args.output_dir / 'method_agreement.png'
        fig.savefig(fig_path, dpi=300)
        plt.close(fig)


if __name__ == "__main__":
    main()
