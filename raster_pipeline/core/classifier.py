"""
Classifier Adapter

Thin seam between the pipeline tables/rasters and a scikit-learn estimator.
The estimator is pluggable; CART (``DecisionTreeClassifier``) is the default.
Training consumes the tables produced by the sampling functions of the zonal
statistics module, classification runs one pass over the feature bands, and
evaluation returns a confusion matrix with producer's, consumer's and overall
accuracy plus Cohen's kappa.

Estimator failures are surfaced as ExternalServiceError and never retried.

Author: Diego Bengochea
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.base import clone
from sklearn.ensemble import RandomForestClassifier
from sklearn.svm import SVC
from sklearn.tree import DecisionTreeClassifier

from shared_utils import get_logger

from .errors import ExternalServiceError, InputSchemaError, report_empty_result
from .raster import Raster

logger = get_logger('classifier')

ESTIMATORS: Dict[str, Callable[..., Any]] = {
    'cart': DecisionTreeClassifier,
    'random_forest': RandomForestClassifier,
    'svm': SVC,
}


@dataclass(frozen=True)
class TrainedModel:
    """Fitted estimator plus the table schema it was trained on."""
    estimator: Any
    feature_columns: Tuple[str, ...]
    label_column: str
    classes: Tuple[Any, ...]
    training_size: int

    @property
    def numeric_labels(self) -> bool:
        return all(isinstance(c, (int, float, np.integer, np.floating)) and not isinstance(c, bool)
                   for c in self.classes)


class ConfusionMatrix:
    """
    Error matrix with actual classes as rows and predicted classes as columns.
    """

    def __init__(self, labels: Sequence[Any], matrix: np.ndarray):
        matrix = np.asarray(matrix, dtype=np.int64)
        if matrix.shape != (len(labels), len(labels)):
            raise InputSchemaError(f"Confusion matrix shape {matrix.shape} does not match {len(labels)} labels")
        self.labels = list(labels)
        self.matrix = matrix

    @classmethod
    def from_predictions(cls, actual: Sequence[Any], predicted: Sequence[Any],
                         labels: Optional[Sequence[Any]] = None) -> 'ConfusionMatrix':
        actual, predicted = list(actual), list(predicted)
        if labels is None:
            labels = sorted(set(actual) | set(predicted), key=lambda v: (str(type(v)), v))
        index = {label: i for i, label in enumerate(labels)}
        matrix = np.zeros((len(labels), len(labels)), dtype=np.int64)
        for a, p in zip(actual, predicted):
            matrix[index[a], index[p]] += 1
        return cls(labels, matrix)

    @property
    def total(self) -> int:
        return int(self.matrix.sum())

    def _ratio(self, numerator: np.ndarray, denominator: np.ndarray) -> Dict[Any, float]:
        with np.errstate(all='ignore'):
            values = np.where(denominator > 0, numerator / np.where(denominator > 0, denominator, 1), np.nan)
        return {label: float(value) for label, value in zip(self.labels, values)}

    def producers_accuracy(self) -> Dict[Any, float]:
        """Per class: correctly classified / reference samples of the class (1 - omission error)."""
        return self._ratio(np.diag(self.matrix), self.matrix.sum(axis=1))

    def consumers_accuracy(self) -> Dict[Any, float]:
        """Per class: correctly classified / samples predicted as the class (1 - commission error)."""
        return self._ratio(np.diag(self.matrix), self.matrix.sum(axis=0))

    def overall_accuracy(self) -> float:
        if self.total == 0:
            return float('nan')
        return float(np.trace(self.matrix) / self.total)

    def kappa(self) -> float:
        """Cohen's kappa; NaN when chance agreement is 1 or there are no samples."""
        total = self.total
        if total == 0:
            return float('nan')
        observed = np.trace(self.matrix) / total
        expected = float((self.matrix.sum(axis=0) * self.matrix.sum(axis=1)).sum()) / total ** 2
        if expected == 1.0:
            return float('nan')
        return float((observed - expected) / (1.0 - expected))

    def to_frame(self) -> pd.DataFrame:
        """Matrix as a DataFrame with producer's accuracy column and consumer's accuracy row."""
        frame = pd.DataFrame(self.matrix, index=self.labels, columns=self.labels)
        frame.columns.name = 'predicted'
        frame['producers_accuracy'] = pd.Series(self.producers_accuracy())
        consumers = pd.Series(self.consumers_accuracy(), name='consumers_accuracy')
        frame = pd.concat([frame, consumers.to_frame().T])
        frame.index.name = 'actual'
        return frame

    def summary(self) -> Dict[str, Any]:
        return {
            'overall_accuracy': self.overall_accuracy(),
            'kappa': self.kappa(),
            'producers_accuracy': self.producers_accuracy(),
            'consumers_accuracy': self.consumers_accuracy(),
            'samples': self.total,
        }

    def __repr__(self) -> str:
        return f"ConfusionMatrix(labels={self.labels}, overall_accuracy={self.overall_accuracy():.3f})"


def split_table(table: pd.DataFrame, ratio: float = 0.7, seed: Optional[int] = None) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Random train/validation split by a uniform random value per row.

    Args:
        table: Sample table
        ratio: Fraction of rows (in expectation) assigned to training
        seed: Random seed

    Returns:
        (training, validation) tables keeping the original row index
    """
    if not 0 < ratio < 1:
        raise InputSchemaError(f"Split ratio must be in (0, 1), got {ratio}")
    draws = np.random.default_rng(seed).random(len(table))
    return table[draws < ratio], table[draws >= ratio]


class ClassifierAdapter:
    """
    Train and apply a supervised classifier over band-value tables.

    Examples:
        >>> adapter = ClassifierAdapter('cart', max_depth=10)
        >>> model = adapter.train(samples, ['blue', 'green', 'red', 'nir'], 'landcover')
        >>> classified = adapter.classify(composite, model)
        >>> print(adapter.evaluate(model, validation).overall_accuracy())
    """

    def __init__(self, estimator: Any = 'cart', **params):
        """
        Initialize the adapter.

        Args:
            estimator: Estimator name from ESTIMATORS or an unfitted scikit-learn estimator
            **params: Parameters for a named estimator
        """
        if isinstance(estimator, str):
            if estimator not in ESTIMATORS:
                raise InputSchemaError(f"Unknown classifier '{estimator}', expected one of {sorted(ESTIMATORS)}")
            self.name = estimator
            self._prototype = ESTIMATORS[estimator](**params)
        else:
            self.name = type(estimator).__name__
            self._prototype = estimator

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> 'ClassifierAdapter':
        """Build from a {'kind': ..., 'params': {...}} configuration section."""
        return cls(config.get('kind', 'cart'), **dict(config.get('params') or {}))

    @staticmethod
    def _require_columns(table: pd.DataFrame, columns: Sequence[str]) -> None:
        missing = [column for column in columns if column not in table.columns]
        if missing:
            raise InputSchemaError(f"Columns {missing} not found in table with columns {list(table.columns)}")

    def train(self, table: pd.DataFrame, feature_columns: Sequence[str], label_column: str) -> TrainedModel:
        """
        Fit a fresh copy of the estimator.

        Rows with a missing feature or label are dropped before fitting.

        Raises:
            InputSchemaError: If columns are missing or no complete row remains
            ExternalServiceError: If the estimator fails to fit
        """
        feature_columns = list(feature_columns)
        self._require_columns(table, feature_columns + [label_column])

        complete = table.dropna(subset=feature_columns + [label_column])
        dropped = len(table) - len(complete)
        if dropped:
            logger.warning(f"Dropped {dropped} training rows with missing features or labels")
        if complete.empty:
            raise InputSchemaError("No complete training rows to fit the classifier")

        estimator = clone(self._prototype)
        try:
            estimator.fit(complete[feature_columns].to_numpy(dtype=np.float64), complete[label_column].to_numpy())
        except Exception as e:
            raise ExternalServiceError('classifier.train', {'estimator': self.name, 'rows': len(complete)},
                                       str(e)) from e

        classes = tuple(v.item() if hasattr(v, 'item') else v for v in estimator.classes_)
        logger.info(f"Trained {self.name} on {len(complete)} samples, {len(feature_columns)} features, "
                    f"{len(classes)} classes")
        return TrainedModel(estimator, tuple(feature_columns), label_column, classes, len(complete))

    def _predict(self, model: TrainedModel, features: np.ndarray) -> np.ndarray:
        if features.shape[0] == 0:
            return np.empty(0, dtype=object)
        try:
            return model.estimator.predict(features)
        except Exception as e:
            raise ExternalServiceError('classifier.predict', {'estimator': self.name, 'rows': features.shape[0]},
                                       str(e)) from e

    def predict_table(self, model: TrainedModel, table: pd.DataFrame) -> pd.Series:
        """Predictions aligned with the table rows; rows with missing features get NaN."""
        self._require_columns(table, model.feature_columns)
        features = table[list(model.feature_columns)]
        complete = features.notna().all(axis=1).to_numpy()
        predictions = pd.Series(np.nan, index=table.index, dtype=object, name='classification')
        predicted = self._predict(model, features[complete].to_numpy(dtype=np.float64))
        predictions[complete] = predicted
        return predictions

    def classify(self, raster: Raster, model: TrainedModel, name: str = 'classification') -> Raster:
        """
        Per-pixel class assignment from the model's feature bands.

        Pixels with no-data in any feature band are no-data. Non-numeric class
        labels are written as their position in ``model.classes``.
        """
        features = list(model.feature_columns)
        raster.require_bands(features)
        valid = raster.valid_mask(features)

        stack = np.stack([raster.filled(band)[valid] for band in features], axis=-1)
        predicted = self._predict(model, stack)

        output = np.zeros(raster.shape, dtype=np.int32 if self._integral(model) else np.float64)
        if predicted.size:
            if model.numeric_labels:
                output[valid] = predicted.astype(output.dtype)
            else:
                codes = {label: code for code, label in enumerate(model.classes)}
                output[valid] = [codes[label] for label in predicted]
        else:
            report_empty_result(logger, "classification input has no valid pixels")

        logger.info(f"Classified {int(valid.sum())} pixels with {self.name}")
        return Raster({name: np.ma.MaskedArray(output, mask=~valid)}, raster.grid, metadata=raster.metadata)

    @staticmethod
    def _integral(model: TrainedModel) -> bool:
        if not model.numeric_labels:
            return True
        return all(float(c).is_integer() for c in model.classes)

    def evaluate(self, model: TrainedModel, table: pd.DataFrame) -> ConfusionMatrix:
        """
        Confusion matrix of the model on a labelled table.

        Rows with missing features or labels are ignored.
        """
        self._require_columns(table, list(model.feature_columns) + [model.label_column])
        complete = table.dropna(subset=list(model.feature_columns) + [model.label_column])
        predicted = self._predict(model, complete[list(model.feature_columns)].to_numpy(dtype=np.float64))
        actual = [v.item() if hasattr(v, 'item') else v for v in complete[model.label_column]]
        predicted = [v.item() if hasattr(v, 'item') else v for v in predicted]
        labels = sorted(set(model.classes) | set(actual), key=lambda v: (str(type(v)), v))
        matrix = ConfusionMatrix.from_predictions(actual, predicted, labels)
        logger.info(f"Evaluated {self.name} on {matrix.total} samples: overall accuracy "
                    f"{matrix.overall_accuracy():.3f}, kappa {matrix.kappa():.3f}")
        return matrix


def accuracy_table(matrix: ConfusionMatrix) -> pd.DataFrame:
    """Flat per-class accuracy table for CSV export."""
    producers = matrix.producers_accuracy()
    consumers = matrix.consumers_accuracy()
    rows: List[Dict[str, Any]] = [
        {'class': label, 'producers_accuracy': producers[label], 'consumers_accuracy': consumers[label]}
        for label in matrix.labels
    ]
    rows.append({'class': 'overall', 'producers_accuracy': matrix.overall_accuracy(),
                 'consumers_accuracy': matrix.overall_accuracy()})
    rows.append({'class': 'kappa', 'producers_accuracy': matrix.kappa(), 'consumers_accuracy': matrix.kappa()})
    return pd.DataFrame(rows)
