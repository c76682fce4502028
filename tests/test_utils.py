import numpy as np
import pandas as pd
import pytest

from la_price_clusters import utils
from la_price_clusters.utils import (
    DATE_COL, PRICE_COL, INDEX_COL, KMEANS_COL, HCLUST_COL,
)


def _clustered_long(wide):
    long = utils.filter_observations(utils.reshape_long(wide))
    return utils.add_price_index(long)


# ---------------------------------------------------------------------------- #
# Loading and reshaping
# ---------------------------------------------------------------------------- #

def test_load_price_workbook_skips_title_rows(tmp_path, three_location_wide, write_workbook):
    path = write_workbook(three_location_wide, tmp_path / 'prices.xlsx')
    wide = utils.load_price_workbook(str(path))
    assert list(wide.columns[:4]) == utils.ID_COLUMNS
    assert wide['la_code'].tolist() == ['E06000001', 'E06000002', 'E06000003']
    assert wide.shape[1] == 4 + 4


def test_load_price_workbook_keeps_blank_identifiers_missing(tmp_path, three_location_wide, write_workbook):
    wide = three_location_wide.copy()
    wide['la_name'] = ['  Hartlepool ', None, 'Redcar and Cleveland']
    path = write_workbook(wide, tmp_path / 'prices.xlsx')
    loaded = utils.load_price_workbook(str(path))
    assert loaded['la_name'].iloc[0] == 'Hartlepool'
    assert pd.isna(loaded['la_name'].iloc[1])
    assert 'nan' not in loaded['la_name'].tolist()


def test_load_price_workbook_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        utils.load_price_workbook(str(tmp_path / 'absent.xlsx'))


@pytest.mark.parametrize('label, expected', [
    ('Year ending Dec 1995', pd.Timestamp('1995-12-01')),
    ('Year ending Mar 2023', pd.Timestamp('2023-03-01')),
    ('Sep 2001', pd.Timestamp('2001-09-01')),
    (pd.Timestamp('2010-06-01'), pd.Timestamp('2010-06-01')),
])
def test_parse_period(label, expected):
    assert utils.parse_period(label) == expected


def test_parse_period_rejects_unknown_label():
    with pytest.raises(ValueError):
        utils.parse_period('Unnamed: 7')


def test_reshape_long(three_location_wide):
    long = utils.reshape_long(three_location_wide)
    assert len(long) == 3 * 4
    assert list(long.columns) == utils.ID_COLUMNS + [DATE_COL, PRICE_COL]
    first = long[long['la_code'] == 'E06000001']
    assert first[DATE_COL].is_monotonic_increasing
    assert first[PRICE_COL].tolist() == [100000, 110000, 120000, 130000]


def test_reshape_long_coerces_suppressed_values(three_location_wide):
    wide = three_location_wide.astype({'Year ending Dec 2020': object})
    wide.loc[0, 'Year ending Dec 2020'] = ':'
    long = utils.reshape_long(wide)
    row = long[(long['la_code'] == 'E06000001') & (long[DATE_COL] == pd.Timestamp('2020-12-01'))]
    assert row[PRICE_COL].isna().all()


def test_reshape_long_rejects_duplicate_identity(three_location_wide):
    wide = pd.concat([three_location_wide, three_location_wide.iloc[[0]]], ignore_index=True)
    with pytest.raises(ValueError, match='Duplicate'):
        utils.reshape_long(wide)


# ---------------------------------------------------------------------------- #
# Filtering and indexing
# ---------------------------------------------------------------------------- #

def test_filter_rejects_locations_with_gaps(three_location_wide):
    wide = three_location_wide.copy()
    wide.loc[2, 'Year ending Dec 2021'] = np.nan
    with pytest.raises(ValueError, match='Missing prices.*E06000003'):
        utils.filter_observations(utils.reshape_long(wide))


def test_filter_drops_locations_with_gaps_when_asked(three_location_wide):
    wide = three_location_wide.copy()
    wide.loc[2, 'Year ending Dec 2021'] = np.nan
    filtered = utils.filter_observations(utils.reshape_long(wide), drop_incomplete=True)
    assert sorted(filtered['la_code'].unique()) == ['E06000001', 'E06000002']


def test_filter_date_window_keeps_gap_outside_window(three_location_wide):
    wide = three_location_wide.copy()
    wide.loc[2, 'Year ending Dec 2019'] = np.nan
    filtered = utils.filter_observations(utils.reshape_long(wide), start='2020-01-01', end='2022-12-31')
    assert filtered['la_code'].nunique() == 3
    assert filtered[DATE_COL].min() == pd.Timestamp('2020-12-01')


def test_filter_by_month():
    wide = pd.DataFrame({
        'region_code': ['E1'], 'region_name': ['North East'],
        'la_code': ['E06000001'], 'la_name': ['Hartlepool'],
        'Year ending Sep 2020': [90000], 'Year ending Dec 2020': [95000],
        'Year ending Dec 2021': [99000],
    })
    filtered = utils.filter_observations(utils.reshape_long(wide), month=12)
    assert (filtered[DATE_COL].dt.month == 12).all()
    assert len(filtered) == 2


def test_filter_empty_result_raises(three_location_wide):
    with pytest.raises(ValueError):
        utils.filter_observations(utils.reshape_long(three_location_wide), start='2030-01-01')


def test_price_index_is_exactly_100_at_baseline(three_location_wide):
    indexed = _clustered_long(three_location_wide)
    utils.check_baseline_index(indexed)
    baseline = indexed[indexed[DATE_COL] == indexed[DATE_COL].min()]
    assert (baseline[INDEX_COL] == 100.0).all()


def test_price_index_values(three_location_wide):
    indexed = _clustered_long(three_location_wide)
    last = indexed[indexed[DATE_COL] == pd.Timestamp('2022-12-01')].set_index('la_code')[INDEX_COL]
    assert last['E06000001'] == pytest.approx(130.0)
    assert last['E06000002'] == pytest.approx(130.0)
    assert last['E06000003'] == pytest.approx(400.0)


def test_price_index_baseline_follows_filter(three_location_wide):
    long = utils.filter_observations(utils.reshape_long(three_location_wide), start='2021-01-01')
    indexed = utils.add_price_index(long)
    utils.check_baseline_index(indexed)
    row = indexed[(indexed['la_code'] == 'E06000003') & (indexed[DATE_COL] == pd.Timestamp('2022-12-01'))]
    assert row[INDEX_COL].iloc[0] == pytest.approx(160.0)


def test_price_index_rejects_zero_baseline(three_location_wide):
    wide = three_location_wide.copy()
    wide.loc[0, 'Year ending Dec 2019'] = 0
    with pytest.raises(ValueError, match='baseline'):
        _clustered_long(wide)


def test_check_baseline_index_detects_drift(three_location_wide):
    indexed = _clustered_long(three_location_wide)
    indexed.loc[indexed[DATE_COL] == indexed[DATE_COL].min(), INDEX_COL] += 1e-9
    with pytest.raises(ValueError):
        utils.check_baseline_index(indexed)


# ---------------------------------------------------------------------------- #
# Feature matrix
# ---------------------------------------------------------------------------- #

def test_build_feature_matrix(three_location_wide):
    matrix = utils.build_feature_matrix(_clustered_long(three_location_wide))
    assert matrix.shape == (3, 4)
    assert list(matrix.columns) == sorted(matrix.columns)
    assert (matrix.iloc[:, 0] == 100.0).all()


def test_build_feature_matrix_rejects_gaps(three_location_wide):
    indexed = _clustered_long(three_location_wide)
    indexed = indexed.drop(indexed.index[-1])
    with pytest.raises(ValueError, match='missing values'):
        utils.build_feature_matrix(indexed)


def test_location_names(three_location_wide):
    names = utils.location_names(_clustered_long(three_location_wide))
    assert names['E06000003'] == 'Redcar and Cleveland'
    assert len(names) == 3


# ---------------------------------------------------------------------------- #
# Clustering
# ---------------------------------------------------------------------------- #

def test_similar_trajectories_cluster_together(three_location_wide):
    matrix = utils.build_feature_matrix(_clustered_long(three_location_wide))

    kmeans_labels, _ = utils.run_kmeans(matrix, k=2)
    hclust_labels, _ = utils.run_hierarchical(matrix, k=2)

    for labels in (kmeans_labels, hclust_labels):
        assert labels['E06000001'] == labels['E06000002']
        assert labels['E06000003'] != labels['E06000001']
        assert set(labels) == {1, 2}


def test_four_clusters_requested_four_returned(grouped_matrix):
    kmeans_labels, wss = utils.run_kmeans(grouped_matrix, k=4)
    hclust_labels, Z = utils.run_hierarchical(grouped_matrix, k=4)

    utils.check_label_count(kmeans_labels, 4)
    utils.check_label_count(hclust_labels, 4)
    assert set(kmeans_labels) == {1, 2, 3, 4}
    assert set(hclust_labels) == {1, 2, 3, 4}
    assert wss > 0
    assert Z.shape == (len(grouped_matrix) - 1, 4)


def test_groups_recovered_by_both_methods(grouped_matrix):
    kmeans_labels, _ = utils.run_kmeans(grouped_matrix, k=4)
    hclust_labels, _ = utils.run_hierarchical(grouped_matrix, k=4)
    codes = list(grouped_matrix.index)
    for labels in (kmeans_labels, hclust_labels):
        for g in range(4):
            assert labels[codes[2 * g]] == labels[codes[2 * g + 1]]
        assert labels.nunique() == 4


def test_clustering_rejects_bad_k(grouped_matrix):
    with pytest.raises(ValueError):
        utils.run_kmeans(grouped_matrix, k=len(grouped_matrix) + 1)
    with pytest.raises(ValueError):
        utils.run_hierarchical(grouped_matrix, k=0)


def test_clustering_rejects_gaps(grouped_matrix):
    matrix = grouped_matrix.copy()
    matrix.iloc[0, 2] = np.nan
    with pytest.raises(ValueError):
        utils.run_kmeans(matrix, k=2)
    with pytest.raises(ValueError):
        utils.run_hierarchical(matrix, k=2)


def test_elbow_table(grouped_matrix):
    elbow = utils.elbow_table(grouped_matrix, k_values=range(1, 11))
    # k above the number of locations is skipped
    assert elbow['k'].tolist() == list(range(1, len(grouped_matrix) + 1))

    values = grouped_matrix.to_numpy()
    total_ss = ((values - values.mean(axis=0)) ** 2).sum()
    assert elbow.loc[elbow['k'] == 1, 'wss'].iloc[0] == pytest.approx(total_ss)
    assert elbow.loc[elbow['k'] == len(grouped_matrix), 'wss'].iloc[0] == pytest.approx(0.0, abs=1e-6)
    assert elbow.loc[elbow['k'] == 4, 'wss'].iloc[0] < elbow.loc[elbow['k'] == 3, 'wss'].iloc[0]
    assert elbow['wss'].is_monotonic_decreasing


def test_cluster_assignments_and_attach(grouped_wide):
    long = _clustered_long(grouped_wide)
    matrix = utils.build_feature_matrix(long)
    names = utils.location_names(long)

    assignments, wss, Z = utils.cluster_assignments(matrix, names, k=4)
    assert list(assignments.columns) == ['la_code', 'la_name', KMEANS_COL, HCLUST_COL]
    assert assignments['la_name'].notna().all()
    utils.check_location_count(long['la_code'].nunique(), assignments, 'assignments')

    clustered = utils.attach_clusters(long, assignments)
    assert len(clustered) == len(long)
    assert clustered[KMEANS_COL].dtype.kind == 'i'
    utils.check_location_count(long['la_code'].nunique(), clustered, 'clustered')


def test_attach_clusters_rejects_unmatched(grouped_wide):
    long = _clustered_long(grouped_wide)
    matrix = utils.build_feature_matrix(long)
    assignments, _, _ = utils.cluster_assignments(matrix, utils.location_names(long), k=2)
    with pytest.raises(ValueError, match='No cluster assignment'):
        utils.attach_clusters(long, assignments.iloc[1:])


def test_check_location_count_detects_loss(grouped_matrix):
    utils.check_location_count(8, grouped_matrix, 'matrix')
    with pytest.raises(ValueError):
        utils.check_location_count(9, grouped_matrix, 'matrix')


def test_check_label_count_detects_collapse():
    with pytest.raises(ValueError):
        utils.check_label_count(pd.Series([1, 1, 2], name=KMEANS_COL), 3)


# ---------------------------------------------------------------------------- #
# Exports
# ---------------------------------------------------------------------------- #

def test_save_exports(tmp_path, grouped_matrix):
    assignments = pd.DataFrame({
        'la_code': ['B', 'A'], 'la_name': ['Bee', 'Ay'],
        KMEANS_COL: [2, 1], HCLUST_COL: [1, 2],
    })
    path = utils.save_cluster_assignments(assignments, str(tmp_path / 'out'))
    saved = pd.read_csv(path)
    assert saved['la_code'].tolist() == ['A', 'B']

    elbow_path = utils.save_elbow_table(pd.DataFrame({'k': [1, 2], 'wss': [4.0, 1.0]}), str(tmp_path))
    assert pd.read_csv(elbow_path)['wss'].tolist() == [4.0, 1.0]

    assert utils.cluster_sizes(assignments) == {'kmeans': [1, 1], 'hierarchical': [1, 1]}
