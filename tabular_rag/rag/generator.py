import logging

from ibm_watsonx_ai import Credentials
from ibm_watsonx_ai.foundation_models import ModelInference
from ibm_watsonx_ai.metanames import GenTextParamsMetaNames as GenParams

from tabular_rag.config import Settings
from tabular_rag.errors import ModelError, RagError

logger = logging.getLogger(__name__)


class GeneratorClient:
    """Completion capability backed by watsonx.ai text generation."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._client: ModelInference | None = None

    @property
    def client(self) -> ModelInference:
        if self._client is None:
            self.settings.validate_credentials()
            credentials = Credentials(
                api_key=self.settings.ibm_cloud_api_key,
                url=self.settings.watsonx_url,
            )
            self._client = ModelInference(
                model_id=self.settings.watsonx_gen_model,
                project_id=self.settings.watsonx_project_id,
                credentials=credentials,
            )
        return self._client

    def complete(
        self,
        prompt: str,
        temperature: float | None = None,
        max_new_tokens: int | None = None,
    ) -> str:
        """Generate text for a raw prompt string.

        Returns:
            The generated text, trimmed.

        Raises:
            ModelError: If the model call fails.
        """
        params = {
            GenParams.TEMPERATURE: float(
                self.settings.temperature if temperature is None else temperature
            ),
            GenParams.MAX_NEW_TOKENS: max_new_tokens or self.settings.max_new_tokens,
            GenParams.TRUNCATE_INPUT_TOKENS: 0,
        }
        try:
            response = self.client.generate(prompt=prompt, params=params)
        except RagError:
            raise
        except Exception as e:
            raise ModelError(f"Text generation failed: {e}", original_error=e) from e

        data = response.get_result() if hasattr(response, "get_result") else response
        if isinstance(data, str):
            raw_answer = data
        elif isinstance(data, dict):
            if data.get("results"):
                raw_answer = data["results"][0].get("generated_text", "")
            elif "generated_text" in data:
                raw_answer = data["generated_text"]
            else:
                raise ModelError(
                    f"Unexpected generation response from watsonx.ai: keys={list(data.keys())}"
                )
        elif hasattr(response, "generated_text"):
            raw_answer = response.generated_text
        else:
            raise ModelError(
                f"Unexpected generation response from watsonx.ai: {type(data)}"
            )
        return (raw_answer or "").strip()
