"""
Single Layer Model

This module drives one Layer through time. Each step runs the forward pass on
the current inputs and then the backward pass. When no feedback is given,
every feedback source receives the layer's own hidden states.
"""

import torch
from tqdm import tqdm

from .config import LearningRates
from .errors import PreconditionError


def prediction_accuracy(predictions, targets):
    """
    Fraction of chunks whose predicted winner matches the target

    Args:
        predictions (list): Predicted chunk winners
        targets (list): Actual chunk winners

    Returns:
        float: Accuracy in [0, 1]
    """
    predictions = torch.as_tensor(predictions, dtype=torch.long).flatten()
    targets = torch.as_tensor(targets, dtype=torch.long).flatten()
    if predictions.numel() != targets.numel():
        raise PreconditionError(f"Cannot compare {predictions.numel()} predictions with {targets.numel()} targets")
    if targets.numel() == 0:
        return 0.0
    return (predictions == targets).float().mean().item()


class LayerModel:
    """
    Runs a layer over sequences of chunked inputs

    Args:
        layer (Layer): A created layer
        compute_system (ComputeSystem): Pool that runs the layer's chunk work
        rates (LearningRates, optional): Learning rates. Defaults to LearningRates().
    """

    def __init__(self, layer, compute_system, rates=None):
        self.layer = layer
        self.compute_system = compute_system
        self.rates = rates if rates is not None else LearningRates()

    def _predicted_layers(self):
        return [
            v for v in range(self.layer.num_visible_layers)
            if self.layer.get_visible_layer_desc(v).predict
        ]

    def step(self, inputs, feed_back=None, learn=True):
        """
        Run one timestep

        Args:
            inputs (list): One chunked representation per visible layer
            feed_back (list, optional): One chunked representation per feedback
                source. Defaults to the layer's own hidden states.
            learn (bool, optional): Whether weights are updated. Defaults to True.

        Returns:
            list: Predictions per visible layer (None for layers that are not predicted)
        """
        alpha, beta, gamma = (self.rates.alpha, self.rates.beta, self.rates.gamma) if learn else (0.0, 0.0, 0.0)

        # Steps without learning leave the layer's recorded rates alone
        recorded = self.layer.rates

        try:
            self.layer.forward(inputs, self.compute_system, alpha, gamma)

            if feed_back is None:
                hidden_states = self.layer.get_hidden_states()
                feed_back = [hidden_states for _ in range(self.layer.num_feed_back_layers)]

            self.layer.backward(feed_back, self.compute_system, beta)
        finally:
            if not learn:
                self.layer.rates = recorded

        predicted = set(self._predicted_layers())
        return [
            self.layer.get_predictions(v) if v in predicted else None
            for v in range(self.layer.num_visible_layers)
        ]

    def _run(self, sequence, learn, pbar=None):
        correct = 0.0
        total = 0
        predictions = None

        for inputs in sequence:
            if predictions is not None:
                for v in self._predicted_layers():
                    correct += prediction_accuracy(predictions[v], inputs[v])
                    total += 1

            predictions = self.step(inputs, learn=learn)

            if pbar is not None:
                pbar.update(1)
                if total > 0:
                    pbar.set_postfix({"accuracy": correct / total})

        return correct / total if total > 0 else 0.0

    def train_sequence(self, sequence, epochs=1, progress=True):
        """
        Train on a sequence of inputs

        Accuracy counts how often the prediction made at one step matches the
        input of the next step.

        Args:
            sequence (list): Per timestep, one chunked representation per visible layer
            epochs (int, optional): Number of passes over the sequence. Defaults to 1.
            progress (bool, optional): Show a progress bar and epoch summaries. Defaults to True.

        Returns:
            list: Prediction accuracy per epoch
        """
        sequence = list(sequence)
        history = []

        for epoch in range(epochs):
            with tqdm(total=len(sequence), desc=f"Epoch {epoch+1}/{epochs}", disable=not progress) as pbar:
                accuracy = self._run(sequence, learn=True, pbar=pbar)

            history.append(accuracy)
            if progress:
                print(f"Epoch {epoch+1}/{epochs}, Prediction accuracy: {accuracy:.4f}")

        return history

    def evaluate(self, sequence):
        """Prediction accuracy over a sequence, without learning."""
        return self._run(list(sequence), learn=False)
