from __future__ import annotations

import itertools
from dataclasses import dataclass, replace
from typing import Any

from genstudio.core.errors import GenStudioError
from genstudio.providers.inference.base import Prediction


@dataclass
class FakeCall:
    method: str
    model_identifier: str | None
    input: dict[str, Any]
    webhook_url: str | None = None


class FakeInferenceProvider:
    def __init__(
        self,
        *,
        output: Any = None,
        error: GenStudioError | None = None,
    ) -> None:
        # Deterministic outputs keep tests stable without external calls.
        self.output = output
        self.error = error
        self.calls: list[FakeCall] = []
        self.predictions: dict[str, Prediction] = {}
        self.models: list[str] = []
        self._ids = itertools.count(1)

    def _next_output(self, prefix: str) -> Any:
        if self.output is not None:
            return self.output
        return {"url": f"https://fake.provider/outputs/{prefix}-{next(self._ids)}.png"}

    async def run(self, model_identifier: str, input: dict[str, Any]) -> Any:
        self.calls.append(FakeCall("run", model_identifier, dict(input)))
        if self.error is not None:
            raise self.error
        return self._next_output("run")

    async def create_prediction(
        self,
        model_identifier: str,
        input: dict[str, Any],
        *,
        webhook_url: str | None = None,
    ) -> Prediction:
        self.calls.append(FakeCall("create_prediction", model_identifier, dict(input), webhook_url))
        if self.error is not None:
            raise self.error
        prediction = Prediction(id=f"fake-pred-{next(self._ids)}", status="starting")
        self.predictions[prediction.id] = prediction
        return prediction

    async def get_prediction(self, prediction_id: str) -> Prediction:
        self.calls.append(FakeCall("get_prediction", None, {"id": prediction_id}))
        return self.predictions[prediction_id]

    async def create_model(self, owner: str, name: str, *, description: str | None = None) -> str:
        self.calls.append(FakeCall("create_model", f"{owner}/{name}", {"description": description}))
        if self.error is not None:
            raise self.error
        self.models.append(f"{owner}/{name}")
        return f"{owner}/{name}"

    async def create_training(
        self,
        *,
        destination: str,
        input: dict[str, Any],
        webhook_url: str | None = None,
    ) -> Prediction:
        self.calls.append(FakeCall("create_training", destination, dict(input), webhook_url))
        if self.error is not None:
            raise self.error
        training = Prediction(id=f"fake-train-{next(self._ids)}", status="starting")
        self.predictions[training.id] = training
        return training

    async def get_training(self, training_id: str) -> Prediction:
        self.calls.append(FakeCall("get_training", None, {"id": training_id}))
        return self.predictions[training_id]

    def complete(
        self,
        prediction_id: str,
        *,
        status: str = "succeeded",
        output: Any = None,
        logs: str | None = None,
        error: str | None = None,
    ) -> Prediction:
        # Test hook that advances a stored run as the provider would.
        updated = replace(
            self.predictions[prediction_id],
            status=status,
            output=output,
            logs=logs,
            error=error,
        )
        self.predictions[prediction_id] = updated
        return updated

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call.method == method)
