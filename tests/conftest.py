from types import SimpleNamespace
from typing import List, Optional

import pytest

from ledger import ResultLedger

VALID_BLUEPRINT = """use scrypto::prelude::*;

#[blueprint]
mod token {
    struct Token {
        vault: Vault,
    }

    impl Token {
        pub fn instantiate() -> Global<Token> {
            let bucket = ResourceBuilder::new_fungible(OwnerRole::None).mint_initial_supply(1000);
            Self { vault: Vault::with_bucket(bucket.into()) }
                .instantiate()
                .prepare_to_globalize(OwnerRole::None)
                .globalize()
        }
    }
}

#[cfg(test)]
mod tests {
    use super::*;

    #[test]
    fn test_instantiation() {}
}"""


def fenced(code: str, language: str = "rust") -> str:
    return f"Here is your blueprint:\n\n```{language}\n{code}\n```\n\nGood luck!"


def completion(content: Optional[str], model: str = "openai/chatgpt-4o-latest"):
    """Shaped like openai's ChatCompletion for the fields the generator reads."""
    return SimpleNamespace(
        model=model,
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(model_dump=lambda: {"prompt_tokens": 10, "completion_tokens": 20}),
    )


class FakeOpenAI:
    """Replays queued responses (or raises queued exceptions) and records every request."""

    def __init__(self, responses: List[object]):
        self.responses = list(responses)
        self.requests: List[dict] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def with_options(self, **kwargs):
        return self

    def _create(self, **kwargs):
        self.requests.append(kwargs)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeToolchain:
    def __init__(self, ready: bool):
        self.ready = ready
        self.probe_count = 0

    @property
    def is_ready(self) -> bool:
        self.probe_count += 1
        return self.ready


@pytest.fixture
def ledger(tmp_path) -> ResultLedger:
    return ResultLedger(path=str(tmp_path / "results.json"))
