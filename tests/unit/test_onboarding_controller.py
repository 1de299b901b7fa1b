"""OnboardingControllerのユニットテスト"""

import asyncio
import tempfile
import unittest
from pathlib import Path

from agentlink.auth.device import DeviceCode
from agentlink.config.connections import SaveResult, YamlConnectionRepository
from agentlink.config.settings import AgentLinkSettings
from agentlink.errors import ErrorCode, InvalidTransition, NoModelsFound, OperationCancelled
from agentlink.models import (
    AuthType,
    Connection,
    Credential,
    ModelDescriptor,
    ProviderType,
    ValidationResult,
)
from agentlink.onboarding import (
    ApiSetupMethod,
    CompletionStatus,
    Draft,
    EditValues,
    OnboardingController,
    ProviderChoice,
    Status,
    Step,
)


class InMemoryCredentialStore:
    def __init__(self):
        self.credentials = {}

    def get_credential(self, slug):
        return self.credentials.get(slug)

    def set_credential(self, slug, credential):
        self.credentials[slug] = credential

    def delete_credential(self, slug):
        self.credentials.pop(slug, None)


class FakeDriver:
    def __init__(self, result=None, models=None, models_error=None):
        self.result = result or ValidationResult.ok()
        self.models = models or [ModelDescriptor(id="claude-sonnet-4-6", name="Claude Sonnet 4.6")]
        self.models_error = models_error
        self.tested = []

    async def test_connection(self, credential, endpoint=None, timeout=None, cancel_event=None):
        self.tested.append((credential, endpoint))
        return self.result

    async def fetch_models(self, connection, credential, paths=None, timeout=None):
        if self.models_error is not None:
            raise self.models_error
        return list(self.models)


class FakeBrowserFlow:
    def __init__(self, store, submit_result=None):
        self.store = store
        self.submit_result = submit_result or ValidationResult.ok()
        self.cancelled = False
        self.codes = []

    async def start_authorization(self):
        return "https://auth.example.com/authorize"

    async def submit_code(self, code, slug):
        self.codes.append((code, slug))
        if self.submit_result.success:
            self.store.set_credential(slug, Credential(oauth_access_token="access"))
        return self.submit_result

    def cancel(self):
        self.cancelled = True


class FakeDeviceFlow:
    def __init__(self, store, result=None, block=False):
        self.store = store
        self.result = result or ValidationResult.ok()
        self.block = block
        self.cancelled = False
        self._release = asyncio.Event()

    async def start_authorization(self):
        return DeviceCode(user_code="ABCD-1234", verification_uri="https://github.com/login/device", device_code="d")

    async def wait_for_confirmation(self, slug, timeout=None):
        if self.block:
            await self._release.wait()
            return ValidationResult.fail("操作がキャンセルされました。", code=ErrorCode.CONN_CANCELLED.value)
        if self.result.success:
            self.store.set_credential(slug, Credential(oauth_access_token="gho"))
        return self.result

    async def cancel(self):
        self.cancelled = True
        self._release.set()


class CancellableDriver(FakeDriver):
    """キャンセルされるまで接続テストから戻らないドライバー"""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()

    async def test_connection(self, credential, endpoint=None, timeout=None, cancel_event=None):
        self.tested.append((credential, endpoint))
        self.started.set()
        await cancel_event.wait()
        return OperationCancelled.from_message("操作がキャンセルされました。").to_validation_result()


class StubbornDriver(FakeDriver):
    """キャンセルを無視し、解放されると成功を返すドライバー"""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def test_connection(self, credential, endpoint=None, timeout=None, cancel_event=None):
        self.tested.append((credential, endpoint))
        self.started.set()
        await self.release.wait()
        return ValidationResult.ok()


class SlowBrowserFlow(FakeBrowserFlow):
    """解放されるまでコード交換を終えないフロー"""

    def __init__(self, store):
        super().__init__(store)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def submit_code(self, code, slug):
        self.codes.append((code, slug))
        self.started.set()
        await self.release.wait()
        self.store.set_credential(slug, Credential(oauth_access_token="late-access"))
        return ValidationResult.ok()


class ControllerTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.settings = AgentLinkSettings(config_dir=self.tmpdir.name)
        self.repo = YamlConnectionRepository(Path(self.tmpdir.name) / "connections.yaml")
        self.store = InMemoryCredentialStore()
        self.driver = FakeDriver()
        self.saved = []
        self.states = []

    def controller(self, **kwargs):
        kwargs.setdefault("initial_step", Step.PROVIDER_SELECT)
        kwargs.setdefault("driver_factory", lambda provider_type: self.driver)
        return OnboardingController(
            self.repo,
            self.store,
            self.settings,
            on_config_saved=self.saved.append,
            on_state_change=self.states.append,
            **kwargs,
        )


class TestApiKeySubmission(ControllerTestCase):
    async def test_success_persists_connection_and_key(self):
        controller = self.controller()
        controller.select_provider(ProviderChoice.CLAUDE)
        controller.select_api_setup_method(ApiSetupMethod.ANTHROPIC_API_KEY)

        state = await controller.submit_credential(Draft(api_key=" sk-test ", name="Work"))

        self.assertEqual(state.step, Step.COMPLETION)
        self.assertEqual(state.completion, CompletionStatus.COMPLETE)
        connection = self.repo.get("work")
        self.assertEqual(connection.provider_type, ProviderType.KEY_AUTH)
        self.assertEqual(connection.auth_type, AuthType.API_KEY)
        self.assertTrue(connection.is_authenticated)
        self.assertTrue(connection.is_default)
        self.assertEqual(connection.default_model, "claude-sonnet-4-6")
        self.assertEqual(self.store.get_credential("work").api_key, "sk-test")
        self.assertEqual([c.slug for c in self.saved], ["work"])

    async def test_entered_models_override_resolution(self):
        self.driver.models_error = NoModelsFound.from_message("should not be called")
        controller = self.controller()
        controller.select_provider(ProviderChoice.API_KEY)
        controller.select_api_setup_method(ApiSetupMethod.PI_API_KEY)

        await controller.submit_credential(
            Draft(api_key="sk-test", base_url="https://proxy.example.com", default_model="llama, mixtral")
        )

        connection = self.repo.get("api-key")
        self.assertEqual(connection.provider_type, ProviderType.CUSTOM_COMPATIBLE)
        self.assertEqual(connection.models, ["llama", "mixtral"])
        self.assertEqual(connection.default_model, "llama")

    async def test_validation_failure_stays_on_step(self):
        self.driver.result = ValidationResult.fail("無効なAPIキー", code=ErrorCode.AUTH_INVALID_CREDENTIAL.value)
        controller = self.controller()
        controller.select_provider(ProviderChoice.CLAUDE)
        controller.select_api_setup_method(ApiSetupMethod.ANTHROPIC_API_KEY)

        state = await controller.submit_credential(Draft(api_key="sk-bad"))

        self.assertEqual(state.step, Step.CREDENTIALS)
        self.assertEqual(state.status, Status.ERROR)
        self.assertEqual(state.error, "無効なAPIキー")
        self.assertEqual(self.repo.list(), [])
        self.assertEqual(self.store.credentials, {})

    async def test_empty_key_fails_without_validation(self):
        controller = self.controller()
        controller.select_provider(ProviderChoice.CLAUDE)
        controller.select_api_setup_method(ApiSetupMethod.ANTHROPIC_API_KEY)

        state = await controller.submit_credential(Draft(api_key="  "))

        self.assertEqual(state.status, Status.ERROR)
        self.assertEqual(self.driver.tested, [])

    async def test_model_resolution_failure_stays_on_step(self):
        self.driver.models_error = NoModelsFound.from_message("モデルがありません")
        controller = self.controller()
        controller.select_provider(ProviderChoice.CLAUDE)
        controller.select_api_setup_method(ApiSetupMethod.ANTHROPIC_API_KEY)

        state = await controller.submit_credential(Draft(api_key="sk-test"))

        self.assertEqual(state.step, Step.CREDENTIALS)
        self.assertEqual(state.error, "モデルがありません")

    async def test_persistence_failure_returns_to_credentials(self):
        controller = self.controller()
        controller.select_provider(ProviderChoice.CLAUDE)
        controller.select_api_setup_method(ApiSetupMethod.ANTHROPIC_API_KEY)
        self.repo.save = lambda connection: SaveResult(success=False, error="disk full")

        state = await controller.submit_credential(Draft(api_key="sk-test"))

        self.assertEqual(state.step, Step.CREDENTIALS)
        self.assertEqual(state.status, Status.ERROR)
        self.assertEqual(state.error, "disk full")
        self.assertEqual(self.saved, [])
        # 保存されなかった接続の認証情報は残さない
        self.assertEqual(self.store.credentials, {})

    async def test_slug_collision_gets_suffix(self):
        self.repo.save(
            Connection(slug="anthropic-api", name="Anthropic API", provider_type=ProviderType.KEY_AUTH, auth_type=AuthType.API_KEY)
        )
        controller = self.controller()
        controller.select_provider(ProviderChoice.CLAUDE)
        controller.select_api_setup_method(ApiSetupMethod.ANTHROPIC_API_KEY)

        await controller.submit_credential(Draft(api_key="sk-test"))

        self.assertIsNotNone(self.repo.get("anthropic-api-2"))
        self.assertTrue(self.repo.get("anthropic-api").is_default)

    async def test_submit_outside_credentials_is_invalid(self):
        controller = self.controller()
        with self.assertRaises(InvalidTransition):
            await controller.submit_credential(Draft(api_key="sk-test"))


class TestEditing(ControllerTestCase):
    def setUp(self):
        super().setUp()
        self.repo.save(
            Connection(
                slug="work",
                name="Work",
                provider_type=ProviderType.KEY_AUTH,
                auth_type=AuthType.API_KEY,
                sub_provider="anthropic",
                created_at="2024-01-01T00:00:00+00:00",
            )
        )
        self.store.set_credential("work", Credential(api_key="sk-stored-1234"))

    async def test_masked_key_reuses_stored_key(self):
        controller = self.controller(editing_slug="work")
        controller.jump_to_credentials(ApiSetupMethod.ANTHROPIC_API_KEY, EditValues(api_key="***1234", name="Work"))

        state = await controller.submit_credential(controller.state.draft)

        self.assertEqual(state.completion, CompletionStatus.COMPLETE)
        credential, _ = self.driver.tested[0]
        self.assertEqual(credential.api_key, "sk-stored-1234")
        self.assertEqual([c.slug for c in self.repo.list()], ["work"])
        self.assertEqual(self.repo.get("work").created_at, "2024-01-01T00:00:00+00:00")

    async def test_resubmission_keeps_model_descriptors_and_default(self):
        """再送信しても既存のモデル定義と既定モデルを維持する"""
        connection = self.repo.get("work")
        connection.models = [
            ModelDescriptor(id="claude-opus-4-1", name="Claude Opus 4.1", context_window=200000),
            ModelDescriptor(id="claude-sonnet-4-6", name="Claude Sonnet 4.6"),
        ]
        connection.default_model = "claude-sonnet-4-6"
        self.repo.save(connection)
        controller = self.controller(editing_slug="work")
        controller.jump_to_credentials(
            ApiSetupMethod.ANTHROPIC_API_KEY,
            EditValues(api_key="***1234", name="Work", default_model="claude-opus-4-1, claude-sonnet-4-6"),
        )

        state = await controller.submit_credential(controller.state.draft)

        self.assertEqual(state.completion, CompletionStatus.COMPLETE)
        saved = self.repo.get("work")
        self.assertEqual(saved.default_model, "claude-sonnet-4-6")
        self.assertEqual(saved.models, connection.models)

    async def test_resubmission_keeps_default_among_fetched_models(self):
        connection = self.repo.get("work")
        connection.models = ["claude-haiku-4-5", "claude-sonnet-4-6"]
        connection.default_model = "claude-sonnet-4-6"
        self.repo.save(connection)
        self.driver.models = [
            ModelDescriptor(id="claude-haiku-4-5", name="Claude Haiku 4.5"),
            ModelDescriptor(id="claude-sonnet-4-6", name="Claude Sonnet 4.6"),
        ]
        controller = self.controller(editing_slug="work")
        controller.jump_to_credentials(ApiSetupMethod.ANTHROPIC_API_KEY, EditValues(api_key="***1234", name="Work"))

        await controller.submit_credential(controller.state.draft)

        self.assertEqual(self.repo.get("work").default_model, "claude-sonnet-4-6")

    async def test_dropped_default_falls_back_to_first_model(self):
        connection = self.repo.get("work")
        connection.models = ["claude-haiku-4-5", "claude-sonnet-4-6"]
        connection.default_model = "claude-sonnet-4-6"
        self.repo.save(connection)
        controller = self.controller(editing_slug="work")
        controller.jump_to_credentials(
            ApiSetupMethod.ANTHROPIC_API_KEY,
            EditValues(api_key="***1234", name="Work", default_model="claude-haiku-4-5"),
        )

        await controller.submit_credential(controller.state.draft)

        saved = self.repo.get("work")
        self.assertEqual(saved.models, ["claude-haiku-4-5"])
        self.assertEqual(saved.default_model, "claude-haiku-4-5")

    async def test_persistence_failure_keeps_existing_credential(self):
        self.repo.save = lambda connection: SaveResult(success=False, error="disk full")
        controller = self.controller(editing_slug="work")
        controller.jump_to_credentials(ApiSetupMethod.ANTHROPIC_API_KEY, EditValues(api_key="***1234", name="Work"))

        state = await controller.submit_credential(controller.state.draft)

        self.assertEqual(state.status, Status.ERROR)
        self.assertEqual(self.store.get_credential("work").api_key, "sk-stored-1234")

    async def test_jump_requires_editing(self):
        controller = self.controller()
        with self.assertRaises(InvalidTransition):
            controller.jump_to_credentials(ApiSetupMethod.PI_API_KEY)

    async def test_begin_edit_sets_slug(self):
        controller = self.controller()
        state = controller.begin_edit("work")
        self.assertEqual(state.editing_slug, "work")
        self.assertEqual(state.step, Step.PROVIDER_SELECT)


class TestBrowserOAuth(ControllerTestCase):
    async def test_code_submission_completes(self):
        flows = []

        def factory(method):
            flow = FakeBrowserFlow(self.store)
            flows.append((method, flow))
            return flow

        controller = self.controller(browser_flow_factory=factory)
        controller.select_provider(ProviderChoice.CHATGPT)

        state = await controller.start_oauth()
        self.assertTrue(state.is_waiting_for_code)

        state = await controller.submit_auth_code("the-code")

        self.assertEqual(state.completion, CompletionStatus.COMPLETE)
        method, flow = flows[0]
        self.assertEqual(method, ApiSetupMethod.PI_CHATGPT_OAUTH)
        self.assertEqual(flow.codes, [("the-code", "chatgpt-plus")])
        connection = self.repo.get("chatgpt-plus")
        self.assertEqual(connection.sub_provider, "openai-codex")
        self.assertEqual(connection.auth_type, AuthType.OAUTH)

    async def test_bad_code_keeps_waiting(self):
        failure = ValidationResult.fail("交換に失敗", code=ErrorCode.OAUTH_EXCHANGE_FAILED.value)
        controller = self.controller(browser_flow_factory=lambda method: FakeBrowserFlow(self.store, failure))
        controller.select_provider(ProviderChoice.CHATGPT)
        await controller.start_oauth()

        state = await controller.submit_auth_code("bad")

        self.assertEqual(state.status, Status.ERROR)
        self.assertTrue(state.is_waiting_for_code)
        self.assertEqual(self.repo.list(), [])

    async def test_cancel_discards_flow(self):
        flow = FakeBrowserFlow(self.store)
        controller = self.controller(browser_flow_factory=lambda method: flow)
        controller.select_provider(ProviderChoice.CHATGPT)
        await controller.start_oauth()

        state = await controller.cancel_oauth()

        self.assertTrue(flow.cancelled)
        self.assertFalse(state.is_waiting_for_code)
        with self.assertRaises(InvalidTransition):
            await controller.submit_auth_code("late")


class TestDeviceOAuth(ControllerTestCase):
    async def test_confirmation_completes(self):
        controller = self.controller(device_flow_factory=lambda: FakeDeviceFlow(self.store))
        controller.select_provider(ProviderChoice.COPILOT)

        state = await controller.start_oauth()

        self.assertEqual(state.completion, CompletionStatus.COMPLETE)
        self.assertTrue(any(s.device_code is not None for s in self.states))
        connection = self.repo.get("github-copilot")
        self.assertEqual(connection.provider_type, ProviderType.DEVICE_OAUTH)
        self.assertEqual(self.store.get_credential("github-copilot").oauth_access_token, "gho")

    async def test_timeout_stays_on_credentials(self):
        failure = ValidationResult.fail("デバイス認証がタイムアウトしました。", code=ErrorCode.OAUTH_TIMED_OUT.value)
        controller = self.controller(device_flow_factory=lambda: FakeDeviceFlow(self.store, failure))
        controller.select_provider(ProviderChoice.COPILOT)

        state = await controller.start_oauth()

        self.assertEqual(state.step, Step.CREDENTIALS)
        self.assertEqual(state.status, Status.ERROR)
        self.assertIsNone(state.device_code)
        self.assertEqual(self.repo.list(), [])

    async def test_close_cancels_waiting_flow(self):
        flow = FakeDeviceFlow(self.store, block=True)
        controller = self.controller(device_flow_factory=lambda: flow)
        controller.select_provider(ProviderChoice.COPILOT)

        task = asyncio.create_task(controller.start_oauth())
        await asyncio.sleep(0.01)
        await controller.close()
        await task

        self.assertTrue(flow.cancelled)
        self.assertEqual(controller.state.step, Step.PROVIDER_SELECT)
        self.assertEqual(self.repo.list(), [])


class TestInterruptedValidation(ControllerTestCase):
    """検証中の back() / close() / cancel_oauth()"""

    def api_key_controller(self, driver):
        self.driver = driver
        controller = self.controller()
        controller.select_provider(ProviderChoice.CLAUDE)
        controller.select_api_setup_method(ApiSetupMethod.ANTHROPIC_API_KEY)
        return controller

    async def test_close_during_key_validation_resets_quietly(self):
        driver = CancellableDriver()
        controller = self.api_key_controller(driver)

        task = asyncio.create_task(controller.submit_credential(Draft(api_key="sk-test")))
        await driver.started.wait()
        await controller.close()
        state = await task

        self.assertEqual(state.step, Step.PROVIDER_SELECT)
        self.assertEqual(state.status, Status.IDLE)
        self.assertIsNone(state.error)
        self.assertEqual(self.repo.list(), [])
        self.assertEqual(self.store.credentials, {})
        self.assertEqual(self.saved, [])

    async def test_back_during_key_validation_returns_to_method_choice(self):
        driver = CancellableDriver()
        controller = self.api_key_controller(driver)

        task = asyncio.create_task(controller.submit_credential(Draft(api_key="sk-test")))
        await driver.started.wait()
        await controller.back()
        state = await task

        self.assertEqual(state.step, Step.API_SETUP)
        self.assertEqual(state.status, Status.IDLE)
        self.assertEqual(self.repo.list(), [])

    async def test_late_success_after_close_is_not_saved(self):
        """キャンセルを無視したドライバーが後から成功しても保存しない"""
        driver = StubbornDriver()
        controller = self.api_key_controller(driver)

        task = asyncio.create_task(controller.submit_credential(Draft(api_key="sk-test")))
        await driver.started.wait()
        await controller.close()
        driver.release.set()
        state = await task

        self.assertEqual(state.step, Step.PROVIDER_SELECT)
        self.assertEqual(self.repo.list(), [])
        self.assertEqual(self.store.credentials, {})
        self.assertEqual(self.saved, [])

    async def test_cancel_during_code_exchange_stores_nothing(self):
        flow = SlowBrowserFlow(self.store)
        controller = self.controller(browser_flow_factory=lambda method: flow)
        controller.select_provider(ProviderChoice.CHATGPT)
        await controller.start_oauth()

        task = asyncio.create_task(controller.submit_auth_code("the-code"))
        await flow.started.wait()
        cancelled = await controller.cancel_oauth()
        flow.release.set()
        state = await task

        self.assertTrue(flow.cancelled)
        self.assertEqual(cancelled.step, Step.CREDENTIALS)
        self.assertEqual(state.step, Step.CREDENTIALS)
        self.assertEqual(state.status, Status.IDLE)
        self.assertFalse(state.is_waiting_for_code)
        self.assertIsNone(self.store.get_credential("chatgpt-plus"))
        self.assertEqual(self.repo.list(), [])
        self.assertEqual(self.saved, [])


class TestLocalModel(ControllerTestCase):
    async def test_local_model_saved_without_credentials(self):
        controller = self.controller()
        controller.select_provider(ProviderChoice.LOCAL)

        state = await controller.submit_local_model(controller.state.draft)

        self.assertEqual(state.completion, CompletionStatus.COMPLETE)
        connection = self.repo.get("local-model")
        self.assertEqual(connection.auth_type, AuthType.NONE)
        self.assertEqual(connection.base_url, "http://localhost:11434")
        self.assertEqual(connection.models, ["qwen3-coder"])
        self.assertEqual(self.store.credentials, {})

    async def test_missing_models_is_error(self):
        controller = self.controller()
        controller.select_provider(ProviderChoice.LOCAL)

        state = await controller.submit_local_model(Draft(base_url="http://localhost:11434", default_model=" , "))

        self.assertEqual(state.step, Step.LOCAL_MODEL)
        self.assertEqual(state.status, Status.ERROR)


class TestFinish(ControllerTestCase):
    async def test_finish_calls_on_complete_and_resets(self):
        completed = []
        controller = self.controller(on_complete=lambda: completed.append(True))
        controller.select_provider(ProviderChoice.LOCAL)
        await controller.submit_local_model(controller.state.draft)

        state = await controller.finish()

        self.assertEqual(completed, [True])
        self.assertEqual(state.step, Step.PROVIDER_SELECT)

    async def test_finish_before_complete_is_invalid(self):
        controller = self.controller()
        with self.assertRaises(InvalidTransition):
            await controller.finish()


if __name__ == "__main__":
    unittest.main()
