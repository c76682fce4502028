import argparse
import json
from pathlib import Path
from typing import Dict, List

import pandas as pd

from la_price_clusters.utils import CLUSTER_COLUMNS, DATE_COL, INDEX_COL, PRICE_COL

OBSERVATIONS_NAME = 'observations_clustered.csv'
DEFAULT_JSON_NAME = '_summary_report.json'
DEFAULT_TEXT_NAME = '_summary_report.txt'


def _summarize_method(df: pd.DataFrame, cluster_col: str) -> List[Dict]:
    last_date = df[DATE_COL].max()
    first_date = df[DATE_COL].min()
    clusters = []
    for label, group in df.groupby(cluster_col):
        final = group[group[DATE_COL] == last_date]
        baseline = group[group[DATE_COL] == first_date]
        names = sorted(group['la_name'].unique())
        clusters.append({
            'cluster': int(label),
            'n_locations': int(group['la_code'].nunique()),
            'mean_final_index': float(final[INDEX_COL].mean()),
            'mean_baseline_price': float(baseline[PRICE_COL].mean()),
            'examples': names[:5],
        })
    return clusters


def _format_text(report: Dict) -> str:
    lines: List[str] = []
    lines.append(f"Period: {report['first_date']} to {report['last_date']}")
    lines.append(f"Local authorities: {report['n_locations']}")
    for method, clusters in report['methods'].items():
        lines.append(f"\n=== {method} ===")
        for item in clusters:
            lines.append(f"  Cluster {item['cluster']}: n={item['n_locations']} "
                         f"final index={item['mean_final_index']:.1f} "
                         f"baseline price=£{item['mean_baseline_price']:,.0f}")
            lines.append(f"    e.g. {', '.join(item['examples'])}")
    return '\n'.join(lines)


def _write_if_requested(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding='utf-8')


def main():
    parser = argparse.ArgumentParser(description='Summarize cluster sizes and growth per cluster.')
    parser.add_argument('--json', dest='as_json', action='store_true', help='Output raw JSON to stdout')
    parser.add_argument('--root', default='results', help='Results directory (default: results)')
    parser.add_argument('--no-save', action='store_true', help='Do not save reports to disk')
    args = parser.parse_args()

    root = Path(args.root)
    path = root / OBSERVATIONS_NAME
    if not path.exists():
        raise FileNotFoundError(path)
    df = pd.read_csv(path, parse_dates=[DATE_COL])

    report = {
        'first_date': str(df[DATE_COL].min().date()),
        'last_date': str(df[DATE_COL].max().date()),
        'n_locations': int(df['la_code'].nunique()),
        'methods': {method: _summarize_method(df, col)
                    for method, col in CLUSTER_COLUMNS.items() if col in df.columns},
    }

    text_report = _format_text(report)
    json_report = json.dumps(report, indent=2)

    if args.as_json:
        print(json_report)
    else:
        print(text_report)

    if not args.no_save:
        _write_if_requested(root / DEFAULT_JSON_NAME, json_report)
        _write_if_requested(root / DEFAULT_TEXT_NAME, text_report + '\n')
        print(f"\nReports saved to {root}")


if __name__ == '__main__':
    main()
