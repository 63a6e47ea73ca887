"""
Tests for the classifier adapter and accuracy assessment.

Author: Diego Bengochea
"""

import numpy as np
import pandas as pd
import pytest

from raster_pipeline.core.classifier import ClassifierAdapter, ConfusionMatrix, accuracy_table, split_table
from raster_pipeline.core.errors import ExternalServiceError, InputSchemaError


@pytest.fixture
def samples():
    """Two classes separated by feature a at 0.5; feature b is noise."""
    rng = np.random.default_rng(1)
    a = np.linspace(0.0, 1.0, 40)
    return pd.DataFrame({'a': a, 'b': rng.random(40), 'label': np.where(a < 0.5, 1, 2)})


@pytest.fixture
def feature_raster(make_raster):
    a = np.ma.MaskedArray(np.full((8, 8), 0.2), mask=np.zeros((8, 8), dtype=bool))
    a[:, 4:] = 0.8
    a.mask[0, 0] = True
    return make_raster({'a': a, 'b': 0.5})


def test_confusion_matrix_accuracies():
    matrix = ConfusionMatrix([1, 2], [[8, 2], [1, 9]])

    assert matrix.total == 20
    assert matrix.overall_accuracy() == pytest.approx(0.85)
    assert matrix.producers_accuracy() == pytest.approx({1: 0.8, 2: 0.9})
    assert matrix.consumers_accuracy() == pytest.approx({1: 8 / 9, 2: 9 / 11})
    assert matrix.kappa() == pytest.approx(0.7)
    assert matrix.to_frame().shape == (3, 3)


def test_confusion_matrix_from_predictions():
    matrix = ConfusionMatrix.from_predictions(['forest', 'water', 'water'], ['forest', 'forest', 'water'])

    assert matrix.labels == ['forest', 'water']
    assert matrix.matrix.tolist() == [[1, 0], [1, 1]]
    assert matrix.producers_accuracy()['water'] == pytest.approx(0.5)
    assert matrix.consumers_accuracy()['forest'] == pytest.approx(0.5)


def test_empty_confusion_matrix_is_nan():
    matrix = ConfusionMatrix([1], [[0]])

    assert np.isnan(matrix.overall_accuracy())
    assert np.isnan(matrix.kappa())
    assert np.isnan(matrix.producers_accuracy()[1])
    with pytest.raises(InputSchemaError):
        ConfusionMatrix([1, 2], [[1]])


def test_split_table_partitions_rows(samples):
    training, validation = split_table(samples, ratio=0.5, seed=0)

    assert len(training) + len(validation) == len(samples)
    assert set(training.index).isdisjoint(validation.index)
    again, _ = split_table(samples, ratio=0.5, seed=0)
    assert list(again.index) == list(training.index)
    with pytest.raises(InputSchemaError):
        split_table(samples, ratio=1.0)


def test_train_classify_and_evaluate(samples, feature_raster):
    adapter = ClassifierAdapter('cart', random_state=0)

    model = adapter.train(samples, ['a', 'b'], 'label')
    classified = adapter.classify(feature_raster, model)
    matrix = adapter.evaluate(model, samples)

    assert model.classes == (1, 2)
    assert model.training_size == 40
    values = classified.band('classification')
    assert values.dtype == np.int32
    assert np.ma.getmaskarray(values)[0, 0]
    assert int(values[1, 1]) == 1
    assert int(values[1, 6]) == 2
    assert matrix.overall_accuracy() == pytest.approx(1.0)


def test_string_labels_are_written_as_codes(samples, feature_raster):
    samples = samples.assign(label=np.where(samples['a'] < 0.5, 'forest', 'water'))
    adapter = ClassifierAdapter.from_config({'kind': 'random_forest', 'params': {'n_estimators': 10,
                                                                                 'random_state': 0}})

    model = adapter.train(samples, ['a'], 'label')
    classified = adapter.classify(feature_raster, model)

    assert model.classes == ('forest', 'water')
    assert int(classified.band('classification')[1, 6]) == 1
    table = accuracy_table(adapter.evaluate(model, samples))
    assert table['class'].tolist() == ['forest', 'water', 'overall', 'kappa']


def test_predict_table_skips_incomplete_rows(samples):
    adapter = ClassifierAdapter()
    model = adapter.train(samples, ['a', 'b'], 'label')
    rows = pd.DataFrame({'a': [0.1, np.nan, 0.9], 'b': [0.5, 0.5, 0.5]})

    predictions = adapter.predict_table(model, rows)

    assert predictions.iloc[0] == 1
    assert pd.isna(predictions.iloc[1])
    assert predictions.iloc[2] == 2


def test_training_errors(samples):
    adapter = ClassifierAdapter('svm')

    with pytest.raises(InputSchemaError):
        adapter.train(samples, ['a', 'ndvi'], 'label')
    with pytest.raises(InputSchemaError):
        ClassifierAdapter('gradient_boosting')
    with pytest.raises(ExternalServiceError):
        adapter.train(samples.assign(label=1), ['a'], 'label')
