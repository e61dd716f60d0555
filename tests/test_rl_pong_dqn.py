"""Tests for the DQN environment, buffer and trainer."""

import threading
import time

import numpy as np
import pytest
import torch

from pong_core import HEIGHT, WIDTH
from rl_pong_dqn import (
    Config,
    PongEnv,
    QNet,
    ReplayBuffer,
    Trainer,
    Transition,
    epsilon,
    load_policy,
    main,
    play,
    save_policy,
    train,
)


def small_config(**overrides):
    cfg = dict(batch_size=16, buffer_warmup=32, sync_every=50, hidden=32, max_steps=200)
    cfg.update(overrides)
    return Config(**cfg)


class TestPongEnv:
    def test_reset_returns_normalized_observation(self):
        env = PongEnv(seed=1)
        s = env.reset()
        assert s.shape == (6,)
        assert s.dtype == np.float32
        assert np.all(np.abs(s) <= 1.0)
        # Centered paddles and ball sit at zero.
        assert s[:4] == pytest.approx([0.0, 0.0, 0.0, 0.0])
        assert env.sim.ai_right

    @pytest.mark.parametrize("ball_x", [-6.0, -11.0, WIDTH - 2, WIDTH])
    def test_observation_clipped_when_ball_partly_off_court(self, ball_x):
        env = PongEnv(seed=1)
        env.reset()
        env.sim.ball.x = ball_x
        obs = env.observe()
        assert np.all(obs >= -1.0) and np.all(obs <= 1.0)
        assert abs(obs[2]) == pytest.approx(1.0)

    def test_actions_move_left_paddle(self):
        env = PongEnv(seed=1)
        env.reset()
        y = env.sim.left.y
        env.step(1)
        assert env.sim.left.y < y
        env.step(2)
        env.step(2)
        assert env.sim.left.y > y

    def test_unknown_action_rejected(self):
        env = PongEnv(seed=1)
        env.reset()
        with pytest.raises(ValueError):
            env.step(3)

    def test_reward_when_agent_scores(self):
        env = PongEnv(seed=1)
        env.reset()
        ball = env.sim.ball
        ball.x, ball.y, ball.vx, ball.vy = WIDTH - 1, 244, 3.0, 0.0
        _, r, done, info = env.step(0)
        assert r == 1.0
        assert done
        assert info["score"] == (1, 0)

    def test_penalty_when_opponent_scores(self):
        env = PongEnv(seed=1)
        env.reset()
        ball = env.sim.ball
        ball.x, ball.y, ball.vx, ball.vy = -5, 100, -3.0, 0.0
        _, r, done, _ = env.step(0)
        assert r == -1.0
        assert done

    def test_episode_capped_by_max_steps(self):
        env = PongEnv(seed=1, max_steps=3)
        env.reset()
        results = [env.step(0)[2] for _ in range(3)]
        assert results == [False, False, True]

    def test_render_rgb(self):
        env = PongEnv(seed=1)
        env.reset()
        img = env.render_rgb()
        assert img.shape == (HEIGHT, WIDTH, 3)
        assert img.dtype == np.uint8
        assert tuple(img[HEIGHT // 2, 35]) == (240, 240, 240)
        assert env.render_rgb(scale=2).shape == (HEIGHT * 2, WIDTH * 2, 3)

    def test_render_with_ball_off_court(self):
        env = PongEnv(seed=1)
        env.reset()
        env.sim.ball.x = -8
        assert env.render_rgb().shape == (HEIGHT, WIDTH, 3)


class TestReplayBuffer:
    def test_capacity_drops_oldest(self):
        buf = ReplayBuffer(capacity=3)
        for i in range(5):
            buf.add(i)
        assert list(buf.items) == [2, 3, 4]
        assert len(buf) == 3

    def test_sample_stacks_columns(self):
        buf = ReplayBuffer(capacity=10)
        for i in range(10):
            buf.add(Transition(np.full(6, i, dtype=np.float32), i % 3, float(i), np.zeros(6, dtype=np.float32), 0.0))
        batch = buf.sample(10)
        assert batch.obs.shape == (10, 6)
        assert sorted(batch.reward.tolist()) == [float(i) for i in range(10)]


class TestQNet:
    def test_forward_shape_and_activations(self):
        net = QNet(hidden=16)
        out = net(torch.zeros(4, 6))
        assert out.shape == (4, 3)
        assert set(net.activations) == {"hidden1", "hidden2", "head"}
        assert net.activations["hidden1"].shape == (4, 16)

    @pytest.mark.parametrize("hidden", [32, 64, 256])
    def test_saved_policy_loads_at_its_own_width(self, tmp_path, hidden):
        path = tmp_path / "policy.pt"
        net = QNet(hidden=hidden)
        save_policy(net, path)
        loaded = load_policy(path, torch.device("cpu"))
        assert loaded.hidden == hidden
        x = torch.ones(1, 6)
        assert torch.allclose(loaded(x), net(x))


class TestTrainer:
    def test_epsilon_decays(self):
        cfg = Config()
        assert epsilon(0, cfg) == pytest.approx(cfg.eps_start)
        assert epsilon(10 * cfg.eps_decay, cfg) == pytest.approx(cfg.eps_end, abs=1e-3)

    def test_train_steps_record_losses(self):
        trainer = Trainer(small_config(), seed=0)
        for _ in range(100):
            trainer.train_step()
        assert trainer.step_count == 100
        assert len(trainer.epsilons) == 100
        assert len(trainer.losses) == 100 - 32 + 1

    def test_update_config_rebuilds_on_hidden_change(self):
        trainer = Trainer(small_config(), seed=0)
        trainer.update_config(small_config(hidden=64))
        assert trainer.q.hidden == 64
        trainer.update_config(small_config(hidden=64, lr=5e-4))
        assert trainer.opt.param_groups[0]["lr"] == 5e-4

    def test_reconfigure_while_training_on_another_thread(self, monkeypatch):
        errors = []
        monkeypatch.setattr(threading, "excepthook", lambda args: errors.append(args.exc_value))
        trainer = Trainer(small_config(), seed=0)
        worker = threading.Thread(target=trainer.run, daemon=True)
        worker.start()
        deadline = time.monotonic() + 5.0
        while trainer.step_count == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        try:
            for i in range(30):
                trainer.update_config(small_config(hidden=32 if i % 2 else 64))
                assert trainer.q_values(trainer.env.observe()).shape == (3,)
        finally:
            trainer.stop()
            worker.join(timeout=5.0)
        assert not worker.is_alive()
        assert errors == []
        assert trainer.step_count > 0

    def test_pause_and_stop_flags(self):
        trainer = Trainer(small_config(), seed=0)
        trainer.pause(True)
        assert trainer.paused.is_set()
        trainer.pause(False)
        assert not trainer.paused.is_set()
        trainer.stop()
        trainer.run()
        assert trainer.step_count == 0


@pytest.mark.parametrize("hidden", [32, 128])
def test_train_then_play(tmp_path, hidden):
    path = tmp_path / "dqn.pt"
    trainer = train(episodes=2, save_path=str(path), seed=0, cfg=small_config(hidden=hidden))
    assert len(trainer.returns) == 2
    assert path.exists()
    returns = play(policy_path=str(path), episodes=1, seed=0)
    assert len(returns) == 1
    assert returns[0] in (-1.0, 0.0, 1.0)


def test_cli_without_mode_prints_usage(capsys):
    main([])
    assert "usage" in capsys.readouterr().out
