"""
Charts and the choropleth map for the house price clustering report.
"""

import os
import logging
from typing import List, Optional

import numpy as np
import pandas as pd
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import seaborn as sns
import geopandas as gpd
import folium
from scipy.cluster.hierarchy import dendrogram

from la_price_clusters.utils import DATE_COL, PRICE_COL, INDEX_COL

CODE_FIELD = 'LAD21CD'
MAP_PALETTE = 'Set2'

debug_logger = logging.getLogger('debug')


def _ensure_parent(save_path: str) -> None:
    parent = os.path.dirname(save_path)
    if parent:
        os.makedirs(parent, exist_ok=True)


def plot_price_trends(long: pd.DataFrame,
                      save_path: str,
                      value: str = PRICE_COL,
                      facet: str = 'region_name',
                      col_wrap: int = 3) -> None:
    """
    Line chart with one line per local authority, faceted by region or cluster.

    Args:
        long: Long observations
        save_path: Where to write the PNG
        value: Column to plot (price or price_index)
        facet: Column used to split the panels
        col_wrap: Panels per row
    """
    try:
        _ensure_parent(save_path)
        sns.set_theme(style='whitegrid')
        g = sns.relplot(data=long, x=DATE_COL, y=value,
                        units='la_code', estimator=None,
                        kind='line', col=facet, col_wrap=col_wrap,
                        linewidth=0.6, alpha=0.4, color='steelblue',
                        height=3, aspect=1.4)
        g.set_titles('{col_name}')
        g.set_axis_labels('Date', 'Median price (£)' if value == PRICE_COL else 'Index (baseline = 100)')
        g.figure.tight_layout()
        g.figure.savefig(save_path, dpi=150)
        plt.close(g.figure)
        print(f"Trend chart saved to {save_path}")
    except Exception as e:
        print(f"Error creating trend chart: {str(e)}")
        raise


def plot_cluster_trends(long: pd.DataFrame,
                        cluster_col: str,
                        save_path: str,
                        value: str = INDEX_COL) -> None:
    """
    Indexed series faceted by cluster with the cluster mean drawn on top.
    """
    try:
        _ensure_parent(save_path)
        sns.set_theme(style='whitegrid')
        g = sns.relplot(data=long, x=DATE_COL, y=value,
                        units='la_code', estimator=None,
                        kind='line', col=cluster_col, col_wrap=2,
                        linewidth=0.5, alpha=0.3, color='grey',
                        height=3, aspect=1.5)
        for cluster, ax in g.axes_dict.items():
            subset = long[long[cluster_col] == cluster]
            mean_curve = subset.groupby(DATE_COL)[value].mean()
            n_locations = subset['la_code'].nunique()
            ax.plot(mean_curve.index, mean_curve.values, color='black', linewidth=2)
            ax.set_title(f'Cluster {cluster} (n={n_locations})')
        g.set_axis_labels('Date', 'Index (baseline = 100)')
        g.figure.tight_layout()
        g.figure.savefig(save_path, dpi=150)
        plt.close(g.figure)
        print(f"Cluster trend chart saved to {save_path}")
    except Exception as e:
        print(f"Error creating cluster trend chart: {str(e)}")
        raise


def plot_elbow(elbow: pd.DataFrame, save_path: str, selected_k: Optional[int] = None) -> None:
    """Within-cluster sum of squares against k."""
    _ensure_parent(save_path)
    sns.set_theme(style='whitegrid')
    fig, ax = plt.subplots(figsize=(7, 4))
    ax.plot(elbow['k'], elbow['wss'], marker='o')
    if selected_k is not None:
        ax.axvline(selected_k, color='red', linestyle='--', alpha=0.7, label=f'k = {selected_k}')
        ax.legend()
    ax.set_xticks(elbow['k'])
    ax.set_xlabel('Number of clusters (k)')
    ax.set_ylabel('Within-cluster sum of squares')
    ax.set_title('k-means elbow curve')
    fig.tight_layout()
    fig.savefig(save_path, dpi=150)
    plt.close(fig)


def _cut_height(Z: np.ndarray, k: int) -> float:
    # Midpoint between the last merge kept and the first merge undone
    heights = Z[:, 2]
    n_merges = len(heights)
    if k <= 1:
        return float(heights[-1]) * 1.05
    lower = float(heights[n_merges - k]) if n_merges - k >= 0 else 0.0
    upper = float(heights[n_merges - k + 1])
    return (lower + upper) / 2


def plot_dendrogram(Z: np.ndarray, labels: List[str], k: int, save_path: str) -> None:
    """
    Dendrogram of the hierarchical run with the cut for k marked.
    """
    _ensure_parent(save_path)
    threshold = _cut_height(Z, k)
    fig, ax = plt.subplots(figsize=(14, 6))
    dendrogram(Z, labels=labels, color_threshold=threshold,
               no_labels=len(labels) > 60, leaf_rotation=90, leaf_font_size=6, ax=ax)
    ax.axhline(threshold, color='red', linestyle='--', alpha=0.7)
    ax.set_title(f'Complete-linkage dendrogram (cut at k={k})')
    ax.set_ylabel('Euclidean distance')
    fig.tight_layout()
    fig.savefig(save_path, dpi=150)
    plt.close(fig)


def plot_cluster_sizes(assignments: pd.DataFrame, cluster_cols: List[str], save_path: str) -> None:
    """Number of local authorities per cluster for each algorithm."""
    _ensure_parent(save_path)
    sizes = assignments.melt(id_vars='la_code', value_vars=cluster_cols,
                             var_name='method', value_name='cluster')
    sns.set_theme(style='whitegrid')
    fig, ax = plt.subplots(figsize=(7, 4))
    sns.countplot(data=sizes, x='cluster', hue='method', ax=ax)
    ax.set_xlabel('Cluster')
    ax.set_ylabel('Number of local authorities')
    ax.set_title('Cluster sizes by method')
    fig.tight_layout()
    fig.savefig(save_path, dpi=150)
    plt.close(fig)


# ---------------------------------------------------------------------------- #
# Choropleth
# ---------------------------------------------------------------------------- #

def load_boundaries(path: str, code_field: str = CODE_FIELD) -> gpd.GeoDataFrame:
    """
    Reads a boundary file and tidies the code field used for joining.
    """
    if not os.path.exists(path):
        raise FileNotFoundError(path)
    boundaries = gpd.read_file(path)
    if code_field not in boundaries.columns:
        raise KeyError(f"Expected '{code_field}' in {path}; found {list(boundaries.columns)}")
    boundaries[code_field] = boundaries[code_field].astype(str).str.strip()
    return boundaries


def _legend_html(colours: dict, title: str) -> str:
    items = ''.join(
        f'<div><span style="display:inline-block;width:12px;height:12px;'
        f'background:{colour};margin-right:6px;"></span>Cluster {label}</div>'
        for label, colour in colours.items()
    )
    return f"""
    <div style="position: fixed;
                bottom: 40px; right: 40px; z-index:9999;
                border:2px solid grey; background-color:white;
                padding: 8px; border-radius: 5px; font-size:13px;">
        <b>{title}</b>
        {items}
    </div>
    """


def build_cluster_map(boundaries: gpd.GeoDataFrame,
                      assignments: pd.DataFrame,
                      cluster_col: str,
                      code_field: str = CODE_FIELD,
                      save_path: Optional[str] = None,
                      title: Optional[str] = None) -> folium.Map:
    """
    Renders cluster labels as a choropleth with a categorical legend.

    Args:
        boundaries: Polygons keyed by code_field
        assignments: Output of cluster_assignments
        cluster_col: Label column to colour by
        code_field: Boundary attribute holding the local authority code
        save_path: Optional HTML output path
        title: Legend title

    Returns:
        folium.Map with one polygon per matched local authority
    """
    geo = boundaries[[code_field, 'geometry']].merge(
        assignments[['la_code', 'la_name', cluster_col]],
        left_on=code_field, right_on='la_code', how='inner')

    n_unmatched_geo = len(boundaries) - len(geo)
    n_unmatched_labels = len(assignments) - geo['la_code'].nunique()
    if n_unmatched_geo or n_unmatched_labels:
        debug_logger.warning(f"Map join: {n_unmatched_geo} boundaries without a cluster, "
                             f"{n_unmatched_labels} clustered locations without a boundary")
    if geo.empty:
        raise ValueError(f"No boundaries matched the cluster assignments on '{code_field}'")

    if geo.crs is not None:
        geo = geo.to_crs(epsg=4326)

    labels = sorted(geo[cluster_col].unique())
    palette = sns.color_palette(MAP_PALETTE, len(labels)).as_hex()
    colours = {label: palette[i] for i, label in enumerate(labels)}
    geo['fill_colour'] = geo[cluster_col].map(colours)
    geo[cluster_col] = geo[cluster_col].astype(int)

    minx, miny, maxx, maxy = geo.total_bounds
    m = folium.Map(location=[(miny + maxy) / 2, (minx + maxx) / 2],
                   zoom_start=6,
                   tiles='cartodbpositron')
    folium.GeoJson(
        geo[['la_code', 'la_name', cluster_col, 'fill_colour', 'geometry']],
        style_function=lambda feature: {
            'fillColor': feature['properties']['fill_colour'],
            'color': 'white',
            'weight': 0.5,
            'fillOpacity': 0.8,
        },
        popup=folium.GeoJsonPopup(fields=['la_name', cluster_col],
                                  aliases=['Local authority', 'Cluster']),
        tooltip=folium.GeoJsonTooltip(fields=['la_name'], labels=False),
    ).add_to(m)
    m.fit_bounds([[miny, minx], [maxy, maxx]])

    legend_title = title or cluster_col.replace('_', ' ').title()
    m.get_root().html.add_child(folium.Element(_legend_html(colours, legend_title)))

    if save_path:
        _ensure_parent(save_path)
        m.save(save_path)
        print(f"Cluster map saved to {save_path}")
    return m
