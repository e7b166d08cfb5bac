from typing import Optional

# ==========================================
# Scrypto Target Shape
# ==========================================
# Scrypto is RadixDLT's smart contract language, built on Rust. Every candidate
# must carry these four structural markers; the simulation verifier checks the
# same table, so the prompt and the checker cannot drift apart.

SCRYPTO_IMPORT = "use scrypto::prelude::*"
BLUEPRINT_MACRO = "#[blueprint]"
TEST_MODULE = "#[cfg(test)]"
TEST_CASE = "#[test]"

# (marker, message reported when the marker is missing)
REQUIRED_MARKERS = [
    (SCRYPTO_IMPORT, "Missing scrypto imports"),
    (BLUEPRINT_MACRO, "Missing #[blueprint] macro"),
    (TEST_MODULE, "Missing test module"),
    (TEST_CASE, "Missing test cases"),
]

SCRYPTO_TEMPLATE = """
```rust
use scrypto::prelude::*;

#[blueprint]
mod your_blueprint {
    struct YourComponent {
        // component state
    }

    impl YourComponent {
        pub fn instantiate_component() -> Global<YourComponent> {
            Self {
                // initialize state
            }
            .instantiate()
            .prepare_to_globalize(OwnerRole::None)
            .globalize()
        }

        pub fn your_method(&mut self) {
            // method implementation
        }
    }
}

#[cfg(test)]
mod tests {
    use super::*;

    #[test]
    fn test_instantiation() {
        // test implementation
    }
}
```
"""

SYSTEM_RULES = """You are an expert Scrypto developer. Scrypto is RadixDLT's smart contract language based on Rust.

CRITICAL RULES:
1. Generate ONLY valid Scrypto code that compiles with cargo scrypto test
2. Use proper Scrypto syntax with blueprints, components, and methods
3. Include comprehensive test modules with #[cfg(test)]
4. Follow Radix best practices for component state management
5. Use proper imports from scrypto::prelude::*
"""


def build_system_prompt(prior_failure_text: Optional[str] = None) -> str:
    """Fixed rules + template, plus the previous failure verbatim when retrying."""
    prompt = f"{SYSTEM_RULES}\nTEMPLATE STRUCTURE:\n{SCRYPTO_TEMPLATE}\n"
    if prior_failure_text:
        prompt += (
            f"PREVIOUS ERROR TO FIX:\n{prior_failure_text}\n\n"
            "Generate corrected code that fixes this error.\n\n"
        )
    prompt += "Generate complete, compile-ready Scrypto code with tests."
    return prompt


def build_user_prompt(task_description: str, is_retry: bool = False) -> str:
    if is_retry:
        return f"Fix the previous error and regenerate the Scrypto code for: {task_description}"
    return f"Generate Scrypto code for: {task_description}"
