"""
Script to run the clustering report on the downloaded ONS workbook.
This script expects the workbook and boundary file under data/.
"""

import os

from la_price_clusters.pipeline import configure_logging, analyze_and_cluster

WORKBOOK = os.path.join("data", "hpssadataset9medianpricepaidforadministrativegeographies.xls")
BOUNDARIES = os.path.join("data", "LAD_DEC_2021_GB_BUC.shp")


def main():
    configure_logging()

    if not os.path.exists(WORKBOOK):
        print(f"Error: workbook {WORKBOOK} not found!")
        return

    print("\nRunning clustering analysis...")
    analyze_and_cluster(
        workbook=WORKBOOK,
        boundaries=BOUNDARIES if os.path.exists(BOUNDARIES) else None,
        k=4,        # chosen from the elbow curve
        month=12,   # year ending December figures
    )

    print("\nAnalysis completed!")

if __name__ == "__main__":
    main()
