"""
Deep Q-learning for the left paddle, played against the built-in AI.

    python rl_pong_dqn.py --train --episodes 500
    python rl_pong_dqn.py --play --model dqn_pong.pt

``PongEnv`` drives the same ``Simulation`` the desktop game runs, so the agent
learns real spin and speed ramp. Observations are six numbers (paddles, ball
position and velocity); the three actions are stay, up and down.
"""
import argparse
import collections
import logging
import random
import threading
import time
from dataclasses import dataclass, replace
from typing import Dict, List, NamedTuple

import numpy as np
import torch
from torch import nn
from torch.nn import functional as F

from pong_core import (
    Action, Simulation,
    WIDTH, HEIGHT, PADDLE_W, PADDLE_H, BALL_SIZE, BALL_SPEED_MAX, LEFT_PADDLE_X, RIGHT_PADDLE_X,
)

logger = logging.getLogger(__name__)

# Index = action id handed to PongEnv.step.
ACTIONS = (frozenset(), frozenset({Action.MOVE_LEFT_UP}), frozenset({Action.MOVE_LEFT_DOWN}))
OBS_DIM = 6

COURT = (25, 25, 30)
NET = (70, 70, 80)
PADDLE_RGB = (240, 240, 240)
BALL_RGB = (120, 200, 255)


def _centered(pos, size, extent):
    return (pos + size / 2 - extent / 2) / (extent / 2)


class PongEnv:
    """Episode = one rally. +1 when the agent scores, -1 when the AI does."""

    def __init__(self, seed=None, max_steps=2000):
        self.sim = Simulation(seed=seed)
        self.max_steps = max_steps
        self.t = 0

    def reset(self):
        self.sim.hard_reset()
        self.sim.ai_right = True
        self.t = 0
        return self.observe()

    def observe(self):
        # The ball can sit partly off court on the frame before a point, so clip.
        snap = self.sim.snapshot()
        obs = np.array([
            _centered(snap.left_y, PADDLE_H, HEIGHT),
            _centered(snap.right_y, PADDLE_H, HEIGHT),
            _centered(snap.ball_x, BALL_SIZE, WIDTH),
            _centered(snap.ball_y, BALL_SIZE, HEIGHT),
            self.sim.ball.vx / BALL_SPEED_MAX,
            self.sim.ball.vy / BALL_SPEED_MAX,
        ], dtype=np.float32)
        return np.clip(obs, -1.0, 1.0)

    def step(self, action):
        if action not in range(len(ACTIONS)):
            raise ValueError(f"Unknown action {action!r}, expected 0, 1 or 2")
        left, right = self.sim.score_left, self.sim.score_right
        self.sim.advance(ACTIONS[action])
        self.t += 1

        reward = float(self.sim.score_left - left) - float(self.sim.score_right - right)
        done = reward != 0.0 or self.t >= self.max_steps
        info = {"score": (self.sim.score_left, self.sim.score_right), "t": self.t}
        return self.observe(), reward, done, info

    def render_rgb(self, scale=1):
        snap = self.sim.snapshot()
        frame = np.empty((HEIGHT, WIDTH, 3), dtype=np.uint8)
        frame[...] = COURT
        mid = WIDTH // 2
        for top in range(0, HEIGHT, 18):
            frame[top:top + 10, mid - 1:mid + 1] = NET
        for x, y in ((LEFT_PADDLE_X, snap.left_y), (RIGHT_PADDLE_X, snap.right_y)):
            frame[int(y):int(y) + PADDLE_H, x:x + PADDLE_W] = PADDLE_RGB
        bx, by = int(snap.ball_x), int(snap.ball_y)
        frame[max(by, 0):max(by + BALL_SIZE, 0), max(bx, 0):max(bx + BALL_SIZE, 0)] = BALL_RGB
        if scale > 1:
            frame = frame.repeat(scale, axis=0).repeat(scale, axis=1)
        return frame


class QNet(nn.Module):
    """Two hidden ReLU layers; forward hooks keep the last activations per layer."""

    def __init__(self, hidden=128):
        super().__init__()
        self.hidden1 = nn.Linear(OBS_DIM, hidden)
        self.hidden2 = nn.Linear(hidden, hidden)
        self.head = nn.Linear(hidden, len(ACTIONS))
        self.activations: Dict[str, np.ndarray] = {}
        for name, layer in self.named_children():
            layer.register_forward_hook(self._record(name))

    @classmethod
    def from_state_dict(cls, state_dict):
        net = cls(hidden=state_dict["hidden1.weight"].shape[0])
        net.load_state_dict(state_dict)
        return net

    @property
    def hidden(self):
        return self.hidden1.out_features

    def _record(self, name):
        def hook(module, inputs, output):
            self.activations[name] = output.detach().cpu().numpy()
        return hook

    def forward(self, obs):
        h = F.relu(self.hidden1(obs))
        h = F.relu(self.hidden2(h))
        return self.head(h)


class Transition(NamedTuple):
    obs: np.ndarray
    action: int
    reward: float
    next_obs: np.ndarray
    done: float


class ReplayBuffer:
    def __init__(self, capacity=50_000, rng=None):
        self.items = collections.deque(maxlen=capacity)
        self.rng = rng or random.Random()

    def __len__(self):
        return len(self.items)

    def add(self, transition: Transition):
        self.items.append(transition)

    def sample(self, n):
        """Return ``n`` distinct transitions as one Transition of stacked arrays."""
        picked = self.rng.sample(list(self.items), n)
        return Transition(*(np.array(column) for column in zip(*picked)))


@dataclass
class Config:
    lr: float = 1e-3
    gamma: float = 0.99
    eps_start: float = 1.0
    eps_end: float = 0.05
    eps_decay: int = 40000
    batch_size: int = 128
    sync_every: int = 1000
    hidden: int = 128
    buffer_warmup: int = 1000
    buffer_cap: int = 50_000
    max_steps: int = 2000


def epsilon(step, cfg: Config):
    return cfg.eps_end + (cfg.eps_start - cfg.eps_end) * np.exp(-step / cfg.eps_decay)


def default_device():
    return torch.device("cuda" if torch.cuda.is_available() else "cpu")


def save_policy(net: QNet, path):
    torch.save(net.state_dict(), path)
    logger.info(f"Saved policy (hidden={net.hidden}) to {path}")


def load_policy(path, device=None) -> QNet:
    """Load a policy saved by ``save_policy``; the layer width comes from the file."""
    device = device or default_device()
    net = QNet.from_state_dict(torch.load(path, map_location=device)).to(device)
    net.eval()
    return net


def greedy_action(net: QNet, obs, device):
    with torch.no_grad():
        q = net(torch.as_tensor(obs, dtype=torch.float32, device=device))
    return int(q.argmax().item())


class Trainer:
    """Online and target networks, replay buffer and the env they learn from.

    All mutation of the networks happens under ``lock`` so a UI thread can
    reconfigure or query the trainer while ``run`` steps on another thread.
    """

    def __init__(self, cfg: Config = None, seed=None):
        self.cfg = cfg or Config()
        self.rng = random.Random(seed)
        if seed is not None:
            torch.manual_seed(seed)
        self.device = default_device()
        self.env = PongEnv(seed=seed, max_steps=self.cfg.max_steps)
        self.lock = threading.RLock()
        self.stop_flag = threading.Event()
        self.paused = threading.Event()
        self.step_count = 0
        self.returns: List[float] = []
        self.losses: List[float] = []
        self.epsilons: List[float] = []
        self.last_weights_snapshot: Dict[str, np.ndarray] = {}
        self._build()
        self._obs = self.env.reset()
        self._episode_return = 0.0

    def _build(self):
        self.q = QNet(self.cfg.hidden).to(self.device)
        self.tgt = QNet(self.cfg.hidden).to(self.device)
        self.tgt.load_state_dict(self.q.state_dict())
        self.opt = torch.optim.Adam(self.q.parameters(), lr=self.cfg.lr)
        self.buf = ReplayBuffer(self.cfg.buffer_cap, rng=self.rng)

    def update_config(self, cfg: Config):
        if cfg == self.cfg:
            return
        with self.lock:
            rebuild = cfg.hidden != self.cfg.hidden
            self.cfg = replace(cfg)
            if rebuild:
                logger.info(f"Hidden size changed to {cfg.hidden}, rebuilding networks")
                self._build()
            else:
                for group in self.opt.param_groups:
                    group["lr"] = cfg.lr

    def q_values(self, obs):
        with self.lock, torch.no_grad():
            return self.q(torch.as_tensor(obs, dtype=torch.float32, device=self.device)).cpu().numpy()

    def snapshot_weights(self):
        self.last_weights_snapshot = {
            name: param.detach().cpu().numpy().copy() for name, param in self.q.named_parameters()
        }

    def policy(self, obs, eps):
        if self.rng.random() < eps:
            return self.rng.randrange(len(ACTIONS))
        return greedy_action(self.q, obs, self.device)

    def optimize(self):
        batch = self.buf.sample(self.cfg.batch_size)
        as_tensor = lambda a, dtype=torch.float32: torch.as_tensor(a, dtype=dtype, device=self.device)
        obs, next_obs = as_tensor(batch.obs), as_tensor(batch.next_obs)
        actions = as_tensor(batch.action, torch.long).unsqueeze(1)
        rewards, dones = as_tensor(batch.reward), as_tensor(batch.done)

        predicted = self.q(obs).gather(1, actions).squeeze(1)
        with torch.no_grad():
            bootstrap = self.tgt(next_obs).max(dim=1).values
        target = rewards + self.cfg.gamma * (1.0 - dones) * bootstrap

        loss = F.smooth_l1_loss(predicted, target)
        self.opt.zero_grad()
        loss.backward()
        nn.utils.clip_grad_norm_(self.q.parameters(), max_norm=5.0)
        self.opt.step()
        return loss.item()

    def train_step(self):
        """Advance the env once and learn from one batch. True when an episode ends."""
        with self.lock:
            self.step_count += 1
            eps = float(epsilon(self.step_count, self.cfg))
            action = self.policy(self._obs, eps)
            next_obs, reward, done, _ = self.env.step(action)
            self.buf.add(Transition(self._obs, action, reward, next_obs, float(done)))
            self.epsilons.append(eps)
            self._obs = next_obs
            self._episode_return += reward

            if len(self.buf) >= max(self.cfg.buffer_warmup, self.cfg.batch_size):
                self.losses.append(self.optimize())
                if self.step_count % 200 == 0:
                    self.snapshot_weights()
            if self.step_count % self.cfg.sync_every == 0:
                self.tgt.load_state_dict(self.q.state_dict())

            if done:
                self.returns.append(self._episode_return)
                self._episode_return = 0.0
                self._obs = self.env.reset()
            return done

    def run(self):
        while not self.stop_flag.is_set():
            if self.paused.is_set():
                self.stop_flag.wait(0.05)
            else:
                self.train_step()

    def stop(self):
        self.stop_flag.set()

    def pause(self, flag: bool):
        (self.paused.set if flag else self.paused.clear)()


def train(episodes=1000, save_path="dqn_pong.pt", seed=None, cfg=None, report_every=50):
    trainer = Trainer(cfg, seed=seed)
    logger.info(f"Training for {episodes} episodes on {trainer.device}")
    while len(trainer.returns) < episodes:
        if trainer.train_step() and len(trainer.returns) % report_every == 0:
            recent = trainer.returns[-report_every:]
            print(f"Episode {len(trainer.returns)}: mean return {np.mean(recent):+.3f}, eps {trainer.epsilons[-1]:.3f}")
    save_policy(trainer.q, save_path)
    print(f"Saved model to {save_path}")
    return trainer


def play(policy_path="dqn_pong.pt", episodes=10, sleep=0.0, seed=None):
    device = default_device()
    net = load_policy(policy_path, device)
    env = PongEnv(seed=seed)
    returns = []
    for episode in range(1, episodes + 1):
        obs, done, total = env.reset(), False, 0.0
        while not done:
            obs, reward, done, info = env.step(greedy_action(net, obs, device))
            total += reward
            if sleep:
                time.sleep(sleep)
        returns.append(total)
        print(f"Episode {episode}: return {total:+.0f} after {info['t']} frames")
    return returns


def main(argv=None):
    parser = argparse.ArgumentParser(description="Train or watch a DQN left paddle against the AI")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--train", action="store_true", help="train and save a policy")
    mode.add_argument("--play", action="store_true", help="play greedy episodes with a saved policy")
    parser.add_argument("--episodes", type=int, default=500)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--model", default="dqn_pong.pt")
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper())

    if args.train:
        train(episodes=args.episodes, save_path=args.model, seed=args.seed)
    elif args.play:
        play(policy_path=args.model, episodes=args.episodes, seed=args.seed)
    else:
        parser.print_usage()


if __name__ == "__main__":
    main()
